"""Tests for the persistent credential registry."""

import pytest

from scan_extract.orchestration.rate_limiter import RateLimiter
from scan_extract.storage import CredentialError, CredentialStore
from scan_extract.types import ApiTier


@pytest.fixture
def store_path(tmp_path):
    return tmp_path / "credentials.json"


class TestCredentialStore:
    """Test adding, updating and removing credentials."""

    def test_add_and_list(self, store_path):
        store = CredentialStore(store_path)

        credential = store.add("AIzaSyExample123456", tier="tier1", label=" main ")

        assert credential.id.startswith("key_")
        assert credential.tier is ApiTier.TIER1
        assert credential.label == "main"
        assert store.list_credentials() == [credential]

    def test_persisted_across_instances(self, store_path):
        first = CredentialStore(store_path)
        credential = first.add("AIzaSyExample123456")

        second = CredentialStore(store_path)

        assert [c.id for c in second.list_credentials()] == [credential.id]
        assert second.get(credential.id).secret == "AIzaSyExample123456"

    @pytest.mark.parametrize(
        "secret, message",
        [
            ("", "must not be empty"),
            ("   ", "must not be empty"),
            ("sk-not-a-google-key", "Invalid API key format"),
        ],
    )
    def test_rejects_bad_secret(self, store_path, secret, message):
        store = CredentialStore(store_path)

        with pytest.raises(CredentialError, match=message):
            store.add(secret)

    def test_rejects_duplicate(self, store_path):
        store = CredentialStore(store_path)
        store.add("AIzaSyExample123456")

        with pytest.raises(CredentialError, match="already registered"):
            store.add("AIzaSyExample123456")

    def test_rejects_unknown_tier(self, store_path):
        store = CredentialStore(store_path)

        with pytest.raises(CredentialError, match="Unknown tier"):
            store.add("AIzaSyExample123456", tier="platinum")

    def test_update_tier_and_label(self, store_path):
        store = CredentialStore(store_path)
        credential = store.add("AIzaSyExample123456")

        updated = store.update(credential.id, tier="tier2", label="backup")

        assert updated.tier is ApiTier.TIER2
        assert updated.label == "backup"
        assert CredentialStore(store_path).get(credential.id).tier is ApiTier.TIER2

    def test_update_unknown(self, store_path):
        with pytest.raises(CredentialError):
            CredentialStore(store_path).update("missing", label="x")

    def test_corrupt_file_loads_empty(self, store_path):
        store_path.write_text("{ not json")

        assert CredentialStore(store_path).list_credentials() == []


class TestRemove:
    """Test removal and quota state cleanup."""

    def test_remove_unknown(self, store_path):
        assert CredentialStore(store_path).remove("missing") is False

    def test_remove_clears_limiter_state(self, store_path, quota_store, clock):
        store = CredentialStore(store_path)
        keep = store.add("AIzaSyKeep000000000")
        drop = store.add("AIzaSyDrop000000000")
        limiter = RateLimiter(store.list_credentials(), quota_store=quota_store, clock=clock)
        limiter.consume(drop.id)

        assert store.remove(drop.id, rate_limiter=limiter) is True

        assert [c.id for c in store.list_credentials()] == [keep.id]
        assert limiter.get_bucket(drop.id) is None
        assert quota_store.load_bucket(drop.id) is None
        assert quota_store.load_daily(drop.id) is None

    def test_clear(self, store_path):
        store = CredentialStore(store_path)
        store.add("AIzaSyExample123456")

        store.clear()

        assert CredentialStore(store_path).list_credentials() == []
