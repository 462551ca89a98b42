import pytest
from unittest.mock import MagicMock
from fastbencode import bencode

from dhtrpc import constants
from dhtrpc.messages import IncomingRequest, Reply, Request, decode_message, encode_message


NODE_ID = b'n' * 32
TARGET = b't' * 32


def test_request_wire_format():
    request = Request(command=constants.CMD_STORE, target=TARGET, value=b"hello", token=b"tok",
                      tid=b"\x00\x01", id=NODE_ID)

    decoded = decode_message(encode_message(request))

    assert decoded == request
    assert not decoded.internal
    assert not decoded.firewalled


def test_ephemeral_request_has_no_id_on_the_wire():
    request = Request(command=constants.CMD_PING, internal=True, tid=b"\x00\x02")
    data = encode_message(request)

    assert b"2:id" not in data
    assert decode_message(data).id is None


def test_reply_carries_compact_nodes_and_error():
    nodes = [(b'a' * 32, "127.0.0.1", 1000), (b'b' * 32, "127.0.0.2", 1001)]
    reply = Reply(tid=b"\x00\x03", id=NODE_ID, nodes=nodes, error=constants.ERROR_INVALID_TOKEN, firewalled=True)

    decoded = decode_message(encode_message(reply))

    assert decoded.nodes == nodes
    assert decoded.error == constants.ERROR_INVALID_TOKEN
    assert decoded.firewalled
    assert decoded.value is None


@pytest.mark.parametrize("message", [
    # Not bencoded
    b"garbage",
    # Not a dictionary
    bencode([1, 2, 3]),
    # No transaction id
    bencode({b"y": b"q", b"c": 0}),
    # Unknown message type
    bencode({b"t": b"aa", b"y": b"e"}),
    # Request without command
    bencode({b"t": b"aa", b"y": b"q"}),
    # Node id with the wrong length
    bencode({b"t": b"aa", b"y": b"q", b"c": 0, b"id": b"short"}),
    # Target with the wrong length
    bencode({b"t": b"aa", b"y": b"q", b"c": 1, b"tg": b"x" * 20}),
    # Value of the wrong type
    bencode({b"t": b"aa", b"y": b"r", b"v": 5}),
])
def test_decode_rejects_malformed_messages(message):
    with pytest.raises(Exception):
        decode_message(message)


def test_decode_ignores_truncated_node_list():
    data = bencode({b"t": b"aa", b"y": b"r", b"n": b"x" * 37})
    assert decode_message(data).nodes == []


def test_incoming_request_answers_once():
    respond = MagicMock()
    request = Request(command=constants.CMD_GET, target=TARGET, tid=b"\x00\x04", id=NODE_ID)
    incoming = IncomingRequest(request, ("127.0.0.1", 5000), authorized=False, respond=respond)

    assert incoming.from_.host == "127.0.0.1"
    assert incoming.from_.port == 5000

    incoming.reply(b"value")
    incoming.error(constants.ERROR_SERVER)
    incoming.reply(b"again")

    respond.assert_called_once_with(b"value", constants.ERROR_NONE)
    assert incoming.replied


def test_incoming_request_error():
    respond = MagicMock()
    request = Request(command=99, tid=b"\x00\x05")
    incoming = IncomingRequest(request, ("127.0.0.1", 5000), authorized=True, respond=respond)

    incoming.error(constants.ERROR_UNKNOWN_COMMAND)

    respond.assert_called_once_with(None, constants.ERROR_UNKNOWN_COMMAND)
