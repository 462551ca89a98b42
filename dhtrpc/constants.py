# Message dictionary keys
MSG_T = b"t"
MSG_Y = b"y"
MSG_ID = b"id"
MSG_FIREWALLED = b"fw"
MSG_INTERNAL = b"i"
MSG_COMMAND = b"c"
MSG_TARGET = b"tg"
MSG_VALUE = b"v"
MSG_TOKEN = b"tk"
MSG_NODES = b"n"
MSG_ERROR = b"e"

# Message type values
MSG_REQUEST = b"q"
MSG_REPLY = b"r"

# Internal (routing) commands
CMD_PING = 0
CMD_FIND_NODE = 1

# Storage commands served by the default dispatcher
CMD_STORE = 100
CMD_GET = 101
CMD_LIST = 102
CMD_DELETE = 103

STORAGE_COMMANDS = {
    CMD_STORE: "STORE",
    CMD_GET: "GET",
    CMD_LIST: "LIST",
    CMD_DELETE: "DELETE",
}
WRITE_COMMANDS = frozenset((CMD_STORE, CMD_DELETE))

# Error codes
ERROR_NONE = 0
ERROR_BAD_REQUEST = 201
ERROR_SERVER = 202
ERROR_INVALID_TOKEN = 203
ERROR_UNKNOWN_COMMAND = 204

# Identifier space
ID_SIZE = 32
ID_BITS = ID_SIZE * 8

# Compact node info: id + IPv4 + port
COMPACT_NODE_SIZE = ID_SIZE + 6
