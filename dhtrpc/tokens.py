import hashlib
import hmac
import os
import time

from . import config


class TokenAuthority:
    """
    Issues write tokens bound to the requester's address.

    A token is an HMAC of "host:port" under a secret that rotates every
    `interval` seconds. Tokens made under the current or the previous
    secret verify, so a token survives one rotation and dies on the second.
    Nothing is stored per requester.
    """

    SECRET_SIZE = 32

    def __init__(self, interval=config.TOKEN_ROTATE_INTERVAL, clock=time.monotonic):
        self.interval = interval
        self.clock = clock
        self.epoch = 0
        self._secrets = [os.urandom(self.SECRET_SIZE), os.urandom(self.SECRET_SIZE)]
        self._rotated_at = clock()

    def rotate(self):
        self._secrets = [os.urandom(self.SECRET_SIZE), self._secrets[0]]
        self.epoch += 1

    def _maybe_rotate(self):
        if not self.interval:
            return
        elapsed = self.clock() - self._rotated_at
        if elapsed < self.interval:
            return
        steps = int(elapsed // self.interval)
        # Two rotations already flush every live secret
        for _ in range(min(steps, 2)):
            self.rotate()
        self.epoch += max(steps - 2, 0)
        self._rotated_at += steps * self.interval

    @staticmethod
    def _derive(secret, addr):
        host, port = addr[0], addr[1]
        return hmac.new(secret, f"{host}:{port}".encode(), hashlib.sha256).digest()

    def token_for(self, addr):
        self._maybe_rotate()
        return self._derive(self._secrets[0], addr)

    def verify(self, addr, token):
        if not token:
            return False
        self._maybe_rotate()
        return any(
            hmac.compare_digest(self._derive(secret, addr), token)
            for secret in self._secrets
        )
