class DHTError(Exception):
    pass


class RequestTimeout(DHTError):
    def __init__(self, addr):
        self.addr = addr
        message = f"Request to {addr[0]}:{addr[1]} timed out"
        super().__init__(message)


class TransportClosed(DHTError):
    def __init__(self):
        super().__init__("Transport is closed")


class RemoteError(DHTError):
    def __init__(self, addr, code):
        self.addr = addr
        self.code = code
        message = f"Peer {addr[0]}:{addr[1]} replied with error {code}"
        super().__init__(message)


class QueryError(DHTError):
    pass


class CommitError(DHTError):
    def __init__(self, successful, required):
        self.successful = successful
        self.required = required
        message = f"Only {successful} of {required} required commits succeeded"
        super().__init__(message)


class InvalidTransition(DHTError):
    def __init__(self, old, new):
        self.old = old
        self.new = new
        message = f"Cannot move from {old.name} to {new.name}"
        super().__init__(message)
