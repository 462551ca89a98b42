import asyncio
import pytest
from unittest.mock import AsyncMock

from dhtrpc import utils
from dhtrpc.routing import PeerRecord, RoutingTable

# Mark all tests in this file as asyncio
pytestmark = pytest.mark.asyncio

OWNER_ID = b'\x00' * 32
K = 4


def far_id(i):
    """Ids sharing no prefix bit with OWNER_ID, so they all land in bucket 0."""
    return b'\x80' + bytes(30) + bytes([i])


def make_peer(node_id, i=1):
    return PeerRecord(id=node_id, host=f"10.0.0.{i}", port=1000 + i)


@pytest.fixture
def table():
    """A small table whose liveness probe always fails unless replaced."""
    return RoutingTable(OWNER_ID, k=K, ping=AsyncMock(return_value=False))


async def settle(table):
    await asyncio.gather(*list(table.background_tasks))


async def test_add_peer_simple(table):
    peer = make_peer(utils.random_node_id())

    assert table.add_or_refresh(peer)

    assert len(table) == 1
    assert table.get(peer.id) is peer
    assert peer.id in table


async def test_rejects_owner_id(table):
    assert not table.add_or_refresh(make_peer(OWNER_ID))
    assert len(table) == 0


async def test_refresh_moves_peer_to_back_and_resets_failures(table):
    first = make_peer(far_id(1), 1)
    second = make_peer(far_id(2), 2)
    table.add_or_refresh(first)
    table.add_or_refresh(second)
    table.record_failure(first.id)
    assert first.failed_attempts == 1

    table.add_or_refresh(make_peer(far_id(1), 9))

    bucket = table.bucket_for(first.id)
    assert list(bucket.peers) == [second.id, first.id]
    assert first.failed_attempts == 0
    assert first.host == "10.0.0.9"
    assert len(table) == 2


async def test_refresh_keeps_first_seen():
    table = RoutingTable(OWNER_ID, k=K)
    peer = make_peer(far_id(1), 1)
    table.add_or_refresh(peer)
    first_seen = peer.first_seen
    last_seen = peer.last_seen

    table.add_or_refresh(make_peer(far_id(1), 1))

    assert peer.first_seen == first_seen
    assert peer.last_seen >= last_seen
    assert peer.first_seen <= peer.last_seen


async def test_probe_flag_clears_even_when_ping_raises(table):
    table.ping = AsyncMock(side_effect=RuntimeError("socket gone"))
    for i in range(K):
        table.add_or_refresh(make_peer(far_id(i), i))
    bucket = table.bucket_for(far_id(0))

    table.add_or_refresh(make_peer(far_id(K), K))
    assert bucket.probing
    await settle(table)

    assert not bucket.probing
    # A failed probe counts as a dead peer
    assert far_id(0) not in table
    assert far_id(K) in table


async def test_full_bucket_evicts_on_ping_failure(table):
    for i in range(K):
        table.add_or_refresh(make_peer(far_id(i), i))
    bucket = table.bucket_for(far_id(0))
    oldest = bucket.oldest()

    newcomer = make_peer(far_id(K), K)
    assert not table.add_or_refresh(newcomer)
    await settle(table)

    table.ping.assert_called_once_with(oldest)
    assert len(bucket) == K
    assert oldest.id not in table
    assert newcomer.id in table


async def test_full_bucket_keeps_on_ping_success(table):
    table.ping = AsyncMock(return_value=True)
    for i in range(K):
        table.add_or_refresh(make_peer(far_id(i), i))
    bucket = table.bucket_for(far_id(0))
    oldest = bucket.oldest()
    before = {peer.id for peer in table.all_peers()}

    newcomer = make_peer(far_id(K), K)
    table.add_or_refresh(newcomer)
    await settle(table)

    table.ping.assert_called_once()
    assert {peer.id for peer in table.all_peers()} == before
    assert newcomer.id not in table
    # The challenged peer is now the most recently seen
    assert list(bucket.peers)[-1] == oldest.id


async def test_one_probe_per_bucket(table):
    table.ping = AsyncMock(return_value=True)
    for i in range(K):
        table.add_or_refresh(make_peer(far_id(i), i))

    table.add_or_refresh(make_peer(far_id(K), K))
    table.add_or_refresh(make_peer(far_id(K + 1), K + 1))
    await settle(table)

    table.ping.assert_called_once()
    assert len(table) == K


async def test_full_bucket_without_ping_drops_newcomer():
    table = RoutingTable(OWNER_ID, k=K)
    for i in range(K):
        table.add_or_refresh(make_peer(far_id(i), i))

    assert not table.add_or_refresh(make_peer(far_id(K), K))
    assert len(table) == K
    assert not table.background_tasks


async def test_own_range_bucket_splits(table):
    # Half the peers are far from the owner, half share the first bit with it
    near = [b'\x40' + bytes(30) + bytes([i]) for i in range(2)]
    far = [far_id(i) for i in range(2)]
    for i, node_id in enumerate(far + near):
        table.add_or_refresh(make_peer(node_id, i))
    assert len(table.buckets) == 1

    extra = b'\x20' + bytes(31)
    assert table.add_or_refresh(make_peer(extra, 9))

    assert len(table.buckets) == 2
    assert set(table.buckets[0].peers) == set(far)
    assert set(table.buckets[1].peers) == set(near) | {extra}
    table.ping.assert_not_called()


async def test_bucket_never_exceeds_capacity(table):
    for i in range(200):
        table.add_or_refresh(make_peer(utils.random_node_id(), i % 250))
    await settle(table)

    for bucket in table.buckets:
        assert len(bucket) <= K
    seen = [peer.id for peer in table.all_peers()]
    assert len(seen) == len(set(seen))


async def test_record_failure_evicts_after_threshold():
    table = RoutingTable(OWNER_ID, k=K, max_failures=2)
    peer = make_peer(utils.random_node_id())
    table.add_or_refresh(peer)

    assert not table.record_failure(peer.id)
    assert peer.id in table
    assert table.record_failure(peer.id)
    assert peer.id not in table
    assert not table.record_failure(peer.id)


async def test_remove(table):
    peer = make_peer(utils.random_node_id())
    table.add_or_refresh(peer)

    assert table.remove(peer.id)
    assert not table.remove(peer.id)
    assert len(table) == 0


async def test_closest_is_sorted_unique_and_bounded():
    table = RoutingTable(OWNER_ID, k=20)
    for i in range(60):
        table.add_or_refresh(make_peer(utils.random_node_id(), i))
    target = utils.random_node_id()

    for n in (1, 5, 20, 100):
        closest = table.closest(target, n)
        distances = [utils.get_distance(peer.id, target) for peer in closest]
        assert len(closest) <= n
        assert distances == sorted(distances)
        assert len({peer.id for peer in closest}) == len(closest)

    everything = sorted(table.all_peers(), key=lambda p: utils.get_distance(p.id, target))
    assert [p.id for p in table.closest(target, 5)] == [p.id for p in everything[:5]]


async def test_closest_can_skip_firewalled_peers(table):
    open_peer = make_peer(utils.random_node_id(), 1)
    hidden = PeerRecord(id=utils.random_node_id(), host="10.0.0.2", port=1002, firewalled=True)
    table.add_or_refresh(open_peer)
    table.add_or_refresh(hidden)

    assert len(table.closest(OWNER_ID, 10)) == 2
    assert [p.id for p in table.closest(OWNER_ID, 10, include_firewalled=False)] == [open_peer.id]
