import logging
from dataclasses import dataclass, field
from typing import NamedTuple, Optional

from fastbencode import bencode, bdecode

from . import constants
from . import utils


log = logging.getLogger(__name__)


class PeerAddress(NamedTuple):
    host: str
    port: int


@dataclass
class Request:
    command: int
    target: Optional[bytes] = None
    value: Optional[bytes] = None
    token: Optional[bytes] = None
    internal: bool = False
    tid: bytes = b""
    id: Optional[bytes] = None
    firewalled: bool = False


@dataclass
class Reply:
    tid: bytes = b""
    id: Optional[bytes] = None
    firewalled: bool = False
    value: Optional[bytes] = None
    token: Optional[bytes] = None
    nodes: list = field(default_factory=list)
    error: int = constants.ERROR_NONE


def _header(message, msg_type):
    data = {
        constants.MSG_T: message.tid,
        constants.MSG_Y: msg_type,
    }
    if message.id is not None:
        data[constants.MSG_ID] = message.id
    if message.firewalled:
        data[constants.MSG_FIREWALLED] = 1
    if message.value is not None:
        data[constants.MSG_VALUE] = message.value
    if message.token is not None:
        data[constants.MSG_TOKEN] = message.token
    return data


def encode_message(message):
    if isinstance(message, Request):
        data = _header(message, constants.MSG_REQUEST)
        data[constants.MSG_COMMAND] = message.command
        if message.internal:
            data[constants.MSG_INTERNAL] = 1
        if message.target is not None:
            data[constants.MSG_TARGET] = message.target
    else:
        data = _header(message, constants.MSG_REPLY)
        if message.nodes:
            data[constants.MSG_NODES] = utils.pack_nodes(message.nodes)
        if message.error:
            data[constants.MSG_ERROR] = message.error
    return bencode(data)


def _optional_bytes(msg, key, size=None):
    value = msg.get(key)
    if value is None:
        return None
    if not isinstance(value, bytes):
        raise ValueError(f"field {key!r} must be bytes")
    if size is not None and len(value) != size:
        raise ValueError(f"field {key!r} must be {size} bytes")
    return value


def _optional_int(msg, key, default=0):
    value = msg.get(key, default)
    if not isinstance(value, int):
        raise ValueError(f"field {key!r} must be an integer")
    return value


def decode_message(data):
    """
    Decodes a datagram into a Request or a Reply. Raises ValueError for
    anything that is not a well formed message.
    """
    msg = bdecode(data)
    if not isinstance(msg, dict):
        raise ValueError("message is not a dictionary")

    tid = msg.get(constants.MSG_T)
    if not isinstance(tid, bytes) or not tid:
        raise ValueError("missing transaction id")

    node_id = _optional_bytes(msg, constants.MSG_ID, constants.ID_SIZE)
    firewalled = bool(_optional_int(msg, constants.MSG_FIREWALLED))
    value = _optional_bytes(msg, constants.MSG_VALUE)
    token = _optional_bytes(msg, constants.MSG_TOKEN)
    msg_type = msg.get(constants.MSG_Y)

    if msg_type == constants.MSG_REQUEST:
        command = msg.get(constants.MSG_COMMAND)
        if not isinstance(command, int):
            raise ValueError("missing command")
        return Request(
            command=command,
            target=_optional_bytes(msg, constants.MSG_TARGET, constants.ID_SIZE),
            value=value,
            token=token,
            internal=bool(_optional_int(msg, constants.MSG_INTERNAL)),
            tid=tid,
            id=node_id,
            firewalled=firewalled,
        )

    if msg_type == constants.MSG_REPLY:
        nodes = _optional_bytes(msg, constants.MSG_NODES) or b""
        return Reply(
            tid=tid,
            id=node_id,
            firewalled=firewalled,
            value=value,
            token=token,
            nodes=list(utils.split_nodes(nodes)),
            error=_optional_int(msg, constants.MSG_ERROR),
        )

    raise ValueError(f"unknown message type {msg_type!r}")


class IncomingRequest:
    """
    An application request as seen by the command dispatcher.

    `authorized` is True only when the request carried a token this node
    issued to the sender's address. The dispatcher must answer with exactly
    one call to `reply()` or `error()`.
    """

    def __init__(self, request, from_, authorized, respond):
        self.command = request.command
        self.target = request.target
        self.value = request.value
        self.token = request.token
        self.id = request.id
        self.from_ = PeerAddress(*from_)
        self.authorized = authorized
        self._respond = respond
        self.replied = False

    def reply(self, value=None):
        self._send(value=value, error=constants.ERROR_NONE)

    def error(self, code):
        self._send(value=None, error=code)

    def _send(self, value, error):
        if self.replied:
            log.warning(f"Dropping second reply to command {self.command} from {self.from_.host}:{self.from_.port}")
            return
        self.replied = True
        self._respond(value, error)

    def __repr__(self):
        return (
            f"<IncomingRequest command={self.command} target={utils.short_id(self.target)} "
            f"from={self.from_.host}:{self.from_.port} authorized={self.authorized}>"
        )
