import asyncio
import collections
import heapq
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from . import config
from . import constants
from . import utils


def _now():
    return datetime.now(timezone.utc)


@dataclass
class PeerRecord:
    id: bytes
    host: str
    port: int
    firewalled: bool = False
    last_seen: datetime = field(default_factory=_now)
    first_seen: datetime = field(default_factory=_now)
    failed_attempts: int = 0

    @property
    def addr(self):
        return (self.host, self.port)


class Bucket:
    """
    Up to k peers ordered from least to most recently seen.
    """

    def __init__(self, k):
        self.k = k
        self.peers = collections.OrderedDict()
        self.probing = False

    def __len__(self):
        return len(self.peers)

    def __contains__(self, peer_id):
        return peer_id in self.peers

    def __iter__(self):
        return iter(self.peers.values())

    def is_full(self):
        return len(self.peers) >= self.k

    def oldest(self):
        return next(iter(self.peers.values()), None)

    def touch(self, peer_id):
        self.peers.move_to_end(peer_id)


class RoutingTable:
    """
    K-bucket routing table indexed by the length of the prefix a peer shares
    with the owner's id.

    The table starts as a single bucket. The last bucket is the one covering
    the owner's own id range: when it fills up it splits, and the members
    sharing one more bit with the owner move to the new last bucket. A full
    bucket that cannot split asks `ping` whether its least-recently-seen
    member is still alive before letting a newcomer in.
    """

    def __init__(self, owner_id, k=config.K, ping=None, max_failures=config.MAX_FAILED_ATTEMPTS):
        self.owner_id = owner_id
        self.k = k
        self.ping = ping
        self.max_failures = max_failures
        self.buckets = [Bucket(k)]
        self.background_tasks = set()
        self.log = logging.getLogger("RoutingTable")

    def __len__(self):
        return sum(len(bucket) for bucket in self.buckets)

    def __contains__(self, peer_id):
        return peer_id in self.bucket_for(peer_id)

    def _bucket_index(self, node_id):
        prefix = utils.common_prefix_len(self.owner_id, node_id)
        return min(prefix, len(self.buckets) - 1)

    def bucket_for(self, node_id):
        return self.buckets[self._bucket_index(node_id)]

    def get(self, peer_id):
        return self.bucket_for(peer_id).peers.get(peer_id)

    def all_peers(self):
        return [peer for bucket in self.buckets for peer in bucket]

    def add_or_refresh(self, peer):
        """
        Inserts a peer or refreshes the record of a known one. Returns True
        when the peer is in the table afterwards. A newcomer hitting a full
        bucket is either dropped or parked behind a liveness probe of the
        bucket's oldest member, which runs in the background.
        """
        if len(peer.id) != len(self.owner_id) or peer.id == self.owner_id:
            return False

        while True:
            index = self._bucket_index(peer.id)
            bucket = self.buckets[index]

            existing = bucket.peers.get(peer.id)
            if existing:
                existing.host = peer.host
                existing.port = peer.port
                existing.firewalled = peer.firewalled
                existing.last_seen = _now()
                existing.failed_attempts = 0
                bucket.touch(peer.id)
                return True

            if not bucket.is_full():
                bucket.peers[peer.id] = peer
                return True

            if self._can_split(index):
                self._split()
                continue

            self._schedule_probe(bucket, peer)
            return False

    def _can_split(self, index):
        bucket = self.buckets[index]
        return (
            index == len(self.buckets) - 1
            and len(self.buckets) < constants.ID_BITS
            and not bucket.probing
        )

    def _split(self):
        index = len(self.buckets) - 1
        old = self.buckets[index]
        new = Bucket(self.k)
        for peer_id in list(old.peers):
            if utils.common_prefix_len(self.owner_id, peer_id) > index:
                new.peers[peer_id] = old.peers.pop(peer_id)
        self.buckets.append(new)

    def _schedule_probe(self, bucket, candidate):
        if self.ping is None or bucket.probing:
            return
        bucket.probing = True
        task = asyncio.ensure_future(self._probe(bucket, candidate))
        self.background_tasks.add(task)
        task.add_done_callback(self.background_tasks.discard)

    async def _probe(self, bucket, candidate):
        try:
            await self._challenge_oldest(bucket, candidate)
        finally:
            bucket.probing = False

    async def _challenge_oldest(self, bucket, candidate):
        oldest = bucket.oldest()
        if oldest is None:
            return

        try:
            alive = await self.ping(oldest)
        except Exception:
            self.log.exception(f"Liveness probe of {oldest.host}:{oldest.port} failed unexpectedly.")
            alive = False

        if alive:
            # Oldest peer answered, keep it and discard the candidate
            if oldest.id in bucket:
                oldest.last_seen = _now()
                bucket.touch(oldest.id)
            return

        bucket.peers.pop(oldest.id, None)
        self.log.debug(f"Evicted {utils.short_id(oldest.id)} in favour of {utils.short_id(candidate.id)}")
        if not bucket.is_full() and self.get(candidate.id) is None:
            bucket.peers[candidate.id] = candidate

    def remove(self, peer_id):
        return self.bucket_for(peer_id).peers.pop(peer_id, None) is not None

    def record_failure(self, peer_id):
        """
        Counts a timed out request against a peer. Returns True if the
        peer was evicted as a result.
        """
        peer = self.get(peer_id)
        if peer is None:
            return False
        peer.failed_attempts += 1
        if peer.failed_attempts >= self.max_failures:
            self.remove(peer_id)
            self.log.debug(f"Evicted {utils.short_id(peer_id)} after {peer.failed_attempts} failed attempts")
            return True
        return False

    def closest(self, target, n=None, include_firewalled=True):
        """
        Find the n closest peers to a given target id, nearest first.
        """
        if n is None:
            n = self.k
        peers = (
            peer for bucket in self.buckets for peer in bucket
            if include_firewalled or not peer.firewalled
        )
        key = utils.distance_key(target)
        return heapq.nsmallest(n, peers, key=lambda peer: key(peer.id))
