import os


# Helper functions to get numeric values from environment variables, with a default.
def _get_int_env(key, default):
    value = os.environ.get(key)
    if value and value.isdigit():
        return int(value)
    return default


def _get_float_env(key, default):
    value = os.environ.get(key)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _get_list_env(key, default=()):
    value = os.environ.get(key)
    if not value:
        return tuple(default)
    return tuple(item.strip() for item in value.split(",") if item.strip())


# -- Network Configuration --
# Port to listen on for DHT traffic.
# Can be overridden by environment variable: DHT_PORT
DEFAULT_PORT = _get_int_env("DHT_PORT", 49737)

# Seed addresses used to join the swarm, as "host:port" strings.
# Can be overridden by environment variable: DHT_BOOTSTRAP (comma separated)
BOOTSTRAP_NODES = _get_list_env("DHT_BOOTSTRAP")

# Seconds to wait for a reply to a single request.
# Can be overridden by environment variable: DHT_REQUEST_TIMEOUT
REQUEST_TIMEOUT = _get_float_env("DHT_REQUEST_TIMEOUT", 1.0)


# -- Routing Table Configuration --
# K-bucket size, also the size of the closest set a query converges on.
# Can be overridden by environment variable: DHT_K
K = _get_int_env("DHT_K", 20)

# Seconds to wait for the least-recently-seen peer of a full bucket to answer a ping.
# Can be overridden by environment variable: DHT_PROBE_TIMEOUT
PROBE_TIMEOUT = _get_float_env("DHT_PROBE_TIMEOUT", 1.0)

# Consecutive request timeouts after which a peer is evicted.
# Can be overridden by environment variable: DHT_MAX_FAILED_ATTEMPTS
MAX_FAILED_ATTEMPTS = _get_int_env("DHT_MAX_FAILED_ATTEMPTS", 3)


# -- Query Configuration --
# Number of requests a query keeps in flight per round.
# Can be overridden by environment variable: DHT_ALPHA
ALPHA = _get_int_env("DHT_ALPHA", 3)

# Upper bound on rounds for a single query.
# Can be overridden by environment variable: DHT_MAX_QUERY_ROUNDS
MAX_QUERY_ROUNDS = _get_int_env("DHT_MAX_QUERY_ROUNDS", 16)


# -- Token Configuration --
# Seconds between write-token secret rotations.
# Can be overridden by environment variable: DHT_TOKEN_ROTATE_INTERVAL
TOKEN_ROTATE_INTERVAL = _get_float_env("DHT_TOKEN_ROTATE_INTERVAL", 300.0)


# -- Lifecycle Configuration --
# Routing table size at which a node counts as fully bootstrapped.
# Can be overridden by environment variable: DHT_MIN_BOOTSTRAP_PEERS
MIN_BOOTSTRAP_PEERS = _get_int_env("DHT_MIN_BOOTSTRAP_PEERS", 3)

# Lookups run during bootstrap before giving up on MIN_BOOTSTRAP_PEERS.
# Can be overridden by environment variable: DHT_BOOTSTRAP_ROUNDS
BOOTSTRAP_ROUNDS = _get_int_env("DHT_BOOTSTRAP_ROUNDS", 3)

# Seconds between background refresh lookups.
# Can be overridden by environment variable: DHT_REFRESH_INTERVAL
REFRESH_INTERVAL = _get_float_env("DHT_REFRESH_INTERVAL", 300.0)

# Seconds an adaptive node stays ephemeral before becoming persistent.
# Can be overridden by environment variable: DHT_ADAPTIVE_TIMEOUT
ADAPTIVE_TIMEOUT = _get_float_env("DHT_ADAPTIVE_TIMEOUT", 1200.0)


# -- Rate Limiting --
# Maximum datagrams accepted from one address per window. 0 disables the limiter.
# Can be overridden by environment variable: DHT_RATE_LIMIT_REQUESTS
RATE_LIMIT_REQUESTS = _get_int_env("DHT_RATE_LIMIT_REQUESTS", 500)

# Length of the rate limiting window in seconds.
# Can be overridden by environment variable: DHT_RATE_LIMIT_WINDOW
RATE_LIMIT_WINDOW = _get_float_env("DHT_RATE_LIMIT_WINDOW", 1.0)

# Seconds between sweeps of idle rate limiter entries.
# Can be overridden by environment variable: DHT_RATE_LIMIT_CLEANUP_INTERVAL
RATE_LIMIT_CLEANUP_INTERVAL = _get_float_env("DHT_RATE_LIMIT_CLEANUP_INTERVAL", 60.0)
