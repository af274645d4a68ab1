"""
Tests for KeyService: issuance, redemption, revocation, device limits,
whitelist / denylist administration.
"""

import asyncio
from datetime import timedelta

import pytest

from keyledger.core.errors import (
    AlreadyListed,
    BatchCommitFailed,
    IdentityDenylisted,
    InvalidKeyFormat,
    InvalidRequest,
    KeyAlreadyBound,
    KeyNotFound,
    NotListed,
    OperationInProgress,
    ReconciliationFailed,
)
from keyledger.core.key_codec import validate_key_format
from keyledger.models.keys import DENYLIST, KEYS, PENDING_KEYS, WHITELIST
from keyledger.services.key_service import RedeemResult


@pytest.fixture
def keys(services):
    return services.keys


async def _redeemed(keys, identity="u1", label="alice", validity_days=None):
    [key] = await keys.issue_keys(1, validity_days, issued_by="staff")
    await keys.redeem_key(identity, label, key)
    return key


class TestIssueKeys:
    @pytest.mark.asyncio
    async def test_issue_writes_pending_keys(self, keys, store):
        issued = await keys.issue_keys(5, 30, issued_by="staff")

        assert len(set(issued)) == 5
        for key in issued:
            assert validate_key_format(key)
            doc = store.peek(PENDING_KEYS, key)
            assert doc["validity_days"] == 30
            assert doc["issued_by"] == "staff"
            assert doc["state"] == "pending"
        assert await keys.count_pending_keys() == 5

    @pytest.mark.asyncio
    @pytest.mark.parametrize("validity", [None, 0, -3])
    async def test_non_positive_validity_is_permanent(self, keys, store, validity):
        [key] = await keys.issue_keys(1, validity)
        assert store.peek(PENDING_KEYS, key)["validity_days"] is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("count", [0, -1, 101])
    async def test_count_out_of_range(self, keys, store, count):
        with pytest.raises(InvalidRequest):
            await keys.issue_keys(count)
        assert store.calls["commit"] == 0

    @pytest.mark.asyncio
    async def test_list_pending_sorted_by_issue_time(self, keys, clock):
        [first] = await keys.issue_keys(1)
        clock.advance(60)
        [second] = await keys.issue_keys(1)

        pending = await keys.list_pending_keys()
        assert [k for k, _ in pending] == [first, second]

    @pytest.mark.asyncio
    async def test_list_pending_skips_malformed(self, keys, store):
        [key] = await keys.issue_keys(1)
        store.seed(PENDING_KEYS, "VORAHUB-ABCDEF-ABCDEF-ABCDEF", {"state": "bound"})

        assert [k for k, _ in await keys.list_pending_keys()] == [key]


class TestRedeemKey:
    @pytest.mark.asyncio
    async def test_redeem_permanent_key(self, keys, store, clock):
        [key] = await keys.issue_keys(1)

        result = await keys.redeem_key("u1", "alice", f"  {key.lower()} ")

        assert result == RedeemResult(key=key, permanent=True, expires_at=None)
        assert store.peek(PENDING_KEYS, key) is None
        doc = store.peek(KEYS, key)
        assert doc["owner_identity"] == "u1"
        assert doc["owner_alias_label"] == "alice"
        assert doc["device_fingerprint"] == ""
        assert doc["device_limit"] == 1
        assert doc["expires_at"] is None
        assert await keys.get_user_active_keys("u1", "alice") == [key]

    @pytest.mark.asyncio
    async def test_redeem_timed_key(self, keys, clock):
        [key] = await keys.issue_keys(1, 30)
        result = await keys.redeem_key("u1", "alice", key)
        assert result.permanent is False
        assert result.expires_at == clock.now() + timedelta(days=30)

    @pytest.mark.asyncio
    async def test_bad_format_rejected_without_io(self, keys, store):
        with pytest.raises(InvalidKeyFormat):
            await keys.redeem_key("u1", "alice", "VORAHUB-123")
        assert sum(store.calls.values()) == 0

    @pytest.mark.asyncio
    async def test_unknown_key(self, keys):
        with pytest.raises(KeyNotFound):
            await keys.redeem_key("u1", "alice", "VORAHUB-000000-000000-000000")

    @pytest.mark.asyncio
    async def test_already_bound_reports_holder(self, keys):
        key = await _redeemed(keys, "u1", "alice")

        with pytest.raises(KeyAlreadyBound) as exc_info:
            await keys.redeem_key("u2", "bob", key)
        assert exc_info.value.public == {"holder": "alice"}

    @pytest.mark.asyncio
    async def test_already_bound_unknown_holder(self, keys, store):
        key = "VORAHUB-ABCDEF-ABCDEF-ABCDEF"
        store.seed(KEYS, key, {"owner_identity": "u9"})
        with pytest.raises(KeyAlreadyBound) as exc_info:
            await keys.redeem_key("u2", "bob", key)
        assert exc_info.value.public == {"holder": "Unknown"}

    @pytest.mark.asyncio
    async def test_denylisted_identity_cannot_redeem(self, keys, store):
        [key] = await keys.issue_keys(1)
        store.seed(DENYLIST, "u1", {"owner_identity": "u1", "added_by": "staff"})

        with pytest.raises(IdentityDenylisted):
            await keys.redeem_key("u1", "alice", key)
        assert store.peek(PENDING_KEYS, key) is not None

    @pytest.mark.asyncio
    async def test_pending_key_redeemed_exactly_once(self, keys, store):
        [key] = await keys.issue_keys(1)

        results = await asyncio.gather(
            keys.redeem_key("u1", "alice", key),
            keys.redeem_key("u2", "bob", key),
            return_exceptions=True,
        )

        wins = [r for r in results if isinstance(r, RedeemResult)]
        losses = [r for r in results if isinstance(r, KeyAlreadyBound)]
        assert len(wins) == 1 and len(losses) == 1
        assert store.peek(PENDING_KEYS, key) is None

    @pytest.mark.asyncio
    async def test_concurrent_redeem_same_identity_single_flight(self, keys):
        first, second = await keys.issue_keys(2)

        results = await asyncio.gather(
            keys.redeem_key("u1", "alice", first),
            keys.redeem_key("u1", "alice", second),
            return_exceptions=True,
        )

        assert sum(isinstance(r, RedeemResult) for r in results) == 1
        assert sum(isinstance(r, OperationInProgress) for r in results) == 1

    @pytest.mark.asyncio
    async def test_store_read_failure_surfaces(self, keys, store):
        [key] = await keys.issue_keys(1)
        store.fail_next("get")
        with pytest.raises(ReconciliationFailed):
            await keys.redeem_key("u1", "alice", key)

    @pytest.mark.asyncio
    async def test_redeem_invalidates_cache(self, keys, services):
        assert await keys.get_user_active_keys("u1", "alice") == []
        key = await _redeemed(keys)
        assert "u1" not in services.cache
        assert await keys.get_user_active_keys("u1", "alice") == [key]

    @pytest.mark.asyncio
    async def test_redeem_during_background_refresh(self, keys, store, services, clock):
        assert await keys.get_user_active_keys("u1", "alice") == []
        [key] = await keys.issue_keys(1)
        clock.advance(301)

        entered = asyncio.Event()
        release = asyncio.Event()
        query = store.query

        async def slow_query(*args, **kwargs):
            docs = await query(*args, **kwargs)
            entered.set()
            await release.wait()
            return docs

        store.query = slow_query
        # soft-stale: served from cache while a refresh runs in the background
        assert await keys.get_user_active_keys("u1", "alice") == []
        await entered.wait()

        await keys.redeem_key("u1", "alice", key)
        release.set()
        await services.reconciler.drain()

        assert await keys.get_user_active_keys("u1", "alice") == [key]

    @pytest.mark.asyncio
    async def test_malformed_pending_key_not_redeemable(self, keys, store):
        key = "VORAHUB-ABCDEF-ABCDEF-ABCDEF"
        store.seed(PENDING_KEYS, key, {"validity_days": "forever"})

        with pytest.raises(KeyNotFound):
            await keys.redeem_key("u1", "alice", key)
        assert store.peek(KEYS, key) is None
        assert store.peek(PENDING_KEYS, key) is not None


class TestRevokeAndLimits:
    @pytest.mark.asyncio
    async def test_revoke_all_keys(self, keys, store):
        k1 = await _redeemed(keys)
        k2 = await _redeemed(keys)
        wl = await keys.add_to_whitelist("u1", "alice", granted_by="staff")

        assert await keys.revoke_all_keys("u1", "alice") == 3
        for key in (k1, k2, wl):
            assert store.peek(KEYS, key) is None
        assert store.peek(WHITELIST, "u1") is None
        assert await keys.get_user_active_keys("u1", "alice") == []

    @pytest.mark.asyncio
    async def test_revoke_without_keys(self, keys):
        assert await keys.revoke_all_keys("u1", "alice") == 0

    @pytest.mark.asyncio
    async def test_failed_revoke_drops_cache_entry(self, keys, store, services):
        await _redeemed(keys)
        await keys.get_user_active_keys("u1", "alice")
        store.fail_next("commit")

        with pytest.raises(BatchCommitFailed):
            await keys.revoke_all_keys("u1", "alice")
        assert "u1" not in services.cache

    @pytest.mark.asyncio
    async def test_set_device_limit(self, keys, store):
        k1 = await _redeemed(keys)
        k2 = await _redeemed(keys)

        assert await keys.set_device_limit("u1", "alice", 5) == 2
        assert store.peek(KEYS, k1)["device_limit"] == 5
        assert store.peek(KEYS, k2)["device_limit"] == 5

    @pytest.mark.asyncio
    @pytest.mark.parametrize("limit", [0, -2, 100_000_001])
    async def test_device_limit_out_of_range(self, keys, limit):
        with pytest.raises(InvalidRequest):
            await keys.set_device_limit("u1", "alice", limit)

    @pytest.mark.asyncio
    async def test_reset_device_binding(self, keys, store):
        key = await _redeemed(keys)
        store.seed(KEYS, key, {**store.peek(KEYS, key), "device_fingerprint": "hw-123"})

        await keys.reset_device_binding(key.lower())
        assert store.peek(KEYS, key)["device_fingerprint"] == ""

    @pytest.mark.asyncio
    async def test_reset_unknown_key(self, keys):
        with pytest.raises(KeyNotFound):
            await keys.reset_device_binding("VORAHUB-000000-000000-000000")

    @pytest.mark.asyncio
    async def test_reset_all_device_bindings(self, keys, store):
        k1 = await _redeemed(keys)
        k2 = await _redeemed(keys)
        for key in (k1, k2):
            store.seed(KEYS, key, {**store.peek(KEYS, key), "device_fingerprint": "hw"})

        assert await keys.reset_all_device_bindings("u1", "alice") == 2
        assert store.peek(KEYS, k1)["device_fingerprint"] == ""
        assert store.peek(KEYS, k2)["device_fingerprint"] == ""

    @pytest.mark.asyncio
    async def test_invalidate_user_cache_picks_up_external_writes(self, keys, store):
        k1 = await _redeemed(keys)
        assert await keys.get_user_active_keys("u1", "alice") == [k1]

        store.seed(KEYS, "VORAHUB-111111-111111-111111", {**store.peek(KEYS, k1)})
        assert await keys.get_user_active_keys("u1", "alice") == [k1]

        refreshed = await keys.invalidate_user_cache("u1", "alice")
        assert sorted(refreshed) == sorted([k1, "VORAHUB-111111-111111-111111"])


class TestWhitelistAdmin:
    @pytest.mark.asyncio
    async def test_add_and_remove(self, keys, store):
        key = await keys.add_to_whitelist("u1", "alice", granted_by="staff")

        grant = store.peek(WHITELIST, "u1")
        assert grant["linked_key"] == key
        assert store.peek(KEYS, key)["is_whitelist_grant"] is True
        assert await keys.get_user_active_keys("u1", "alice") == [key]
        assert [g.owner_identity for g in await keys.list_whitelist()] == ["u1"]

        await keys.remove_from_whitelist("u1", "alice")
        assert store.peek(WHITELIST, "u1") is None
        assert store.peek(KEYS, key) is None
        assert await keys.get_user_active_keys("u1", "alice") == []

    @pytest.mark.asyncio
    async def test_duplicate_add(self, keys):
        await keys.add_to_whitelist("u1", "alice", granted_by="staff")
        with pytest.raises(AlreadyListed) as exc_info:
            await keys.add_to_whitelist("u1", "alice", granted_by="staff")
        assert exc_info.value.public == {"list_name": "whitelist"}

    @pytest.mark.asyncio
    async def test_remove_not_listed(self, keys):
        with pytest.raises(NotListed):
            await keys.remove_from_whitelist("u1", "alice")


class TestDenylistAdmin:
    @pytest.mark.asyncio
    async def test_issue_redeem_denylist_lifecycle(self, keys, store):
        [key] = await keys.issue_keys(1)
        await keys.redeem_key("u1", "alice", key)
        assert await keys.get_user_active_keys("u1", "alice") == [key]

        deleted = await keys.add_to_denylist("u1", "alice", added_by="staff")

        assert deleted == 1
        assert await keys.get_user_active_keys("u1", "alice") == []
        assert store.peek(KEYS, key) is None
        assert store.peek(DENYLIST, "u1")["added_by"] == "staff"
        assert await keys.is_denylisted("u1")

    @pytest.mark.asyncio
    async def test_denylist_removes_whitelist_grant(self, keys, store):
        await _redeemed(keys)
        wl = await keys.add_to_whitelist("u1", "alice", granted_by="staff")

        assert await keys.add_to_denylist("u1", "alice", added_by="staff") == 2
        assert store.peek(WHITELIST, "u1") is None
        assert store.peek(KEYS, wl) is None

    @pytest.mark.asyncio
    async def test_duplicate_and_removal(self, keys):
        await keys.add_to_denylist("u1", "alice", added_by="staff")
        with pytest.raises(AlreadyListed):
            await keys.add_to_denylist("u1", "alice", added_by="staff")

        assert [e.owner_identity for e in await keys.list_denylist()] == ["u1"]
        await keys.remove_from_denylist("u1")
        assert not await keys.is_denylisted("u1")
        with pytest.raises(NotListed):
            await keys.remove_from_denylist("u1")


class TestLoaderScript:
    def test_loader_script(self, keys):
        script = keys.build_loader_script("VORAHUB-ABCDEF-ABCDEF-ABCDEF")
        assert script == (
            '_G.script_key = "VORAHUB-ABCDEF-ABCDEF-ABCDEF"\n'
            'loadstring(game:HttpGet("https://vorahub.xyz/loader"))()'
        )
