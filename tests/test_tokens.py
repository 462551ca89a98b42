from dhtrpc.tokens import TokenAuthority


ADDR = ("10.0.0.1", 6881)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_token_verifies_for_the_issuing_address():
    tokens = TokenAuthority()
    token = tokens.token_for(ADDR)

    assert tokens.verify(ADDR, token)
    assert tokens.verify(list(ADDR), token)


def test_token_is_bound_to_host_and_port():
    tokens = TokenAuthority()
    token = tokens.token_for(ADDR)

    assert not tokens.verify(("10.0.0.2", 6881), token)
    assert not tokens.verify(("10.0.0.1", 6882), token)


def test_missing_or_garbage_token_is_rejected():
    tokens = TokenAuthority()

    assert not tokens.verify(ADDR, None)
    assert not tokens.verify(ADDR, b"")
    assert not tokens.verify(ADDR, b"x" * 32)


def test_tokens_from_another_authority_are_rejected():
    ours = TokenAuthority()
    theirs = TokenAuthority()

    assert not ours.verify(ADDR, theirs.token_for(ADDR))


def test_token_survives_one_rotation_but_not_two():
    tokens = TokenAuthority(interval=0)
    token = tokens.token_for(ADDR)

    tokens.rotate()
    assert tokens.verify(ADDR, token)
    assert tokens.token_for(ADDR) != token

    tokens.rotate()
    assert not tokens.verify(ADDR, token)


def test_rotation_follows_the_clock():
    clock = FakeClock()
    tokens = TokenAuthority(interval=300, clock=clock)
    token = tokens.token_for(ADDR)

    clock.now += 299
    assert tokens.verify(ADDR, token)
    assert tokens.epoch == 0

    clock.now += 1
    assert tokens.verify(ADDR, token)
    assert tokens.epoch == 1

    clock.now += 300
    assert not tokens.verify(ADDR, token)
    assert tokens.epoch == 2


def test_long_idle_period_expires_everything():
    clock = FakeClock()
    tokens = TokenAuthority(interval=10, clock=clock)
    token = tokens.token_for(ADDR)

    clock.now += 10 * 50
    assert not tokens.verify(ADDR, token)
    assert tokens.epoch == 50

    fresh = tokens.token_for(ADDR)
    assert tokens.verify(ADDR, fresh)
