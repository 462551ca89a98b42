import asyncio
import bisect
import collections
import inspect
import logging
from dataclasses import dataclass
from typing import Optional

from . import utils
from .errors import CommitError, DHTError, QueryError, RemoteError
from .messages import PeerAddress, Request


@dataclass
class QueryReply:
    from_: PeerAddress
    id: Optional[bytes] = None
    value: Optional[bytes] = None
    token: Optional[bytes] = None
    error: int = 0


class NoCommit:
    """Read phase only."""

    def __repr__(self):
        return "NoCommit()"


class AutoCommit:
    """Resend the query payload with each closest responder's token."""

    def __repr__(self):
        return "AutoCommit()"


class CustomCommit:
    """Hand each closest responder that returned a token to `handler`."""

    def __init__(self, handler):
        self.handler = handler

    def __repr__(self):
        return f"CustomCommit({self.handler!r})"


NO_COMMIT = NoCommit()
AUTO_COMMIT = AutoCommit()

# Candidate states
NEW = 0
PENDING = 1
VISITED = 2
FAILED = 3


class _Candidate:
    __slots__ = ("id", "addr", "distance", "state")

    def __init__(self, node_id, addr, distance):
        self.id = node_id
        self.addr = addr
        self.distance = distance
        self.state = NEW

    def __lt__(self, other):
        return self.distance < other.distance


class Query:
    """
    Iterative lookup of the peers closest to `target`.

    Iterating the query yields a QueryReply per peer that answered the read
    phase, as soon as it arrives. Rounds of up to `concurrency` requests are
    only issued while someone pulls replies, so a consumer that stops
    iterating stops the lookup; requests already sent are left to finish.
    `finished()` drives the lookup to the end and then runs the commit phase.

    The lookup keeps a distance-ordered shortlist. Once a round brings in
    nobody closer than the closest peer already visited, the shortlist is
    frozen and the remaining unvisited members of the K closest are swept.
    It ends when every live member of the K closest has answered, or after
    `max_rounds` rounds.
    """

    def __init__(self, node, target, command, value=None, commit=NO_COMMIT, internal=False,
                 concurrency=None, max_rounds=None, min_commits=0):
        if not isinstance(commit, (NoCommit, AutoCommit, CustomCommit)):
            raise TypeError(f"commit must be a commit policy, not {commit!r}")

        self.node = node
        self.target = target
        self.command = command
        self.value = value
        self.commit = commit
        self.internal = internal
        self.k = node.k
        self.concurrency = concurrency or node.concurrency
        self.max_rounds = max_rounds or node.max_rounds
        self.min_commits = min_commits
        self.log = logging.getLogger("Query")

        self.rounds = 0
        self.responses = 0
        self.failed = []
        self.closest_replies = []
        self.successful_commits = 0
        self.commit_errors = []

        self._distance = utils.distance_key(target)
        self._candidates = {}
        self._shortlist = []
        self._responders = []
        self._buffer = collections.deque()
        self._tasks = set()
        self._pending = 0
        self._wakeup = asyncio.Event()
        self._closest_visited = None
        self._started = False
        self._sweeping = False
        self._read_done = False
        self._finish_task = None

    def __aiter__(self):
        return self

    async def __anext__(self):
        self._start()
        while True:
            if self._buffer:
                return self._buffer.popleft()
            if self._pending == 0:
                if self._read_done or not self._next_round():
                    raise StopAsyncIteration
                continue
            self._wakeup.clear()
            await self._wakeup.wait()

    def close(self):
        """
        Stop issuing rounds. Replies still in flight are not yielded, but
        they still count towards `closest_replies` for the commit phase.
        """
        self._buffer.clear()
        self._finish_read()

    async def finished(self):
        if self._finish_task is None:
            self._finish_task = asyncio.ensure_future(self._run())
        await self._finish_task
        return self

    async def _run(self):
        async for _ in self:
            pass
        # Rank again, replies may have landed after an early close()
        self._finish_read()
        if not self.responses:
            raise QueryError(f"No peer answered the query for {utils.short_id(self.target)}")
        await self._commit()

    def _start(self):
        if self._started:
            return
        self._started = True

        for peer in self.node.table.closest(self.target, self.k):
            self._add_candidate(peer.id, peer.addr)

        if not self._shortlist:
            self._finish_read()
            raise QueryError("No peers in the routing table to query")

    def _add_candidate(self, node_id, addr):
        if node_id == self.node.id or node_id in self._candidates:
            return
        candidate = _Candidate(node_id, tuple(addr), self._distance(node_id))
        self._candidates[node_id] = candidate
        bisect.insort(self._shortlist, candidate)

    def _window(self):
        window = []
        for candidate in self._shortlist:
            if candidate.state == FAILED:
                continue
            window.append(candidate)
            if len(window) == self.k:
                break
        return window

    def _next_round(self):
        unvisited = [c for c in self._window() if c.state == NEW]
        if not unvisited:
            return self._finish_read()

        if self.rounds >= self.max_rounds:
            self.log.debug(f"Query for {utils.short_id(self.target)} stopped after {self.rounds} rounds")
            return self._finish_read()

        if (not self._sweeping and self._closest_visited is not None
                and unvisited[0].distance > self._closest_visited):
            self._sweeping = True

        self.rounds += 1
        for candidate in unvisited[:self.concurrency]:
            candidate.state = PENDING
            self._pending += 1
            task = asyncio.ensure_future(self._visit(candidate))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        return True

    def _finish_read(self):
        self._read_done = True
        ranked = sorted(self._responders, key=lambda item: item[0])
        self.closest_replies = [reply for _, reply in ranked[:self.k]]
        return False

    async def _visit(self, candidate):
        request = Request(
            command=self.command,
            target=self.target,
            value=self.value,
            internal=self.internal,
        )
        try:
            reply = await self.node.send_request(request, candidate.addr, peer_id=candidate.id)
        except DHTError as e:
            candidate.state = FAILED
            self.failed.append(PeerAddress(*candidate.addr))
            self.log.debug(f"No answer from {candidate.addr[0]}:{candidate.addr[1]}: {e}")
        else:
            self._on_reply(candidate, reply)
        finally:
            self._pending -= 1
            self._wakeup.set()

    def _on_reply(self, candidate, reply):
        candidate.state = VISITED
        self.responses += 1

        if not self._sweeping:
            for node_id, host, port in reply.nodes:
                self._add_candidate(node_id, (host, port))

        if self._closest_visited is None or candidate.distance < self._closest_visited:
            self._closest_visited = candidate.distance

        record = QueryReply(
            from_=PeerAddress(*candidate.addr),
            id=reply.id,
            value=reply.value,
            token=reply.token,
            error=reply.error,
        )
        if reply.id is not None:
            self._responders.append((self._distance(reply.id), record))
        if not self._read_done:
            self._buffer.append(record)

    async def _commit(self):
        if isinstance(self.commit, NoCommit):
            return

        # Never write to a peer that did not hand out a token
        replies = [r for r in self.closest_replies if r.token and not r.error]
        results = await asyncio.gather(
            *(self._commit_one(reply) for reply in replies),
            return_exceptions=True,
        )
        for reply, result in zip(replies, results):
            if isinstance(result, BaseException):
                self.commit_errors.append((reply.from_, result))
                self.log.debug(f"Commit to {reply.from_.host}:{reply.from_.port} failed: {result!r}")
            else:
                self.successful_commits += 1

        if self.successful_commits < self.min_commits:
            raise CommitError(self.successful_commits, self.min_commits)

    async def _commit_one(self, reply):
        if isinstance(self.commit, CustomCommit):
            result = self.commit.handler(reply)
            if inspect.isawaitable(result):
                await result
            return

        request = Request(
            command=self.command,
            target=self.target,
            value=self.value,
            token=reply.token,
            internal=self.internal,
        )
        response = await self.node.send_request(request, reply.from_, peer_id=reply.id)
        if response.error:
            raise RemoteError(reply.from_, response.error)
