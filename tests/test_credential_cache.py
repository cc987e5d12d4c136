"""Tests for the read-once credential cache."""

from authcore.services.credential_cache import CredentialCache


class TestCredentialCache:

    def test_consume_is_read_once(self, logger):
        cache = CredentialCache(logger)
        cache.set("84987654321", "P@ssw0rd")

        entry = cache.consume()
        assert (entry.phone, entry.password) == ("84987654321", "P@ssw0rd")
        assert cache.consume() is None
        assert not cache.has_entry

    def test_set_replaces_previous_entry(self, logger):
        cache = CredentialCache(logger)
        cache.set("84900000001", "first1")
        cache.set("84900000002", "second")

        assert cache.peek().phone == "84900000002"

    def test_clear(self, logger):
        cache = CredentialCache(logger)
        cache.set("84987654321", "P@ssw0rd")
        cache.clear()
        assert cache.peek() is None

    def test_password_not_in_repr(self, logger):
        cache = CredentialCache(logger)
        cache.set("84987654321", "P@ssw0rd")
        assert "P@ssw0rd" not in repr(cache.peek())
