from starlight.booking.return_journey import ReturnJourneyOrchestrator
from starlight.session.store import JourneySessionStore


def _store(query_client, clock, ttl=900):
    return JourneySessionStore(lambda: ReturnJourneyOrchestrator(query_client), ttl_seconds=ttl, clock=clock)


def test_get_or_create_reuses_orchestrator(query_client, clock):
    store = _store(query_client, clock)
    first = store.get_or_create("s1")
    assert store.get_or_create("s1") is first
    assert store.get_or_create("s2") is not first
    assert len(store) == 2


def test_ttl_refreshes_on_access(query_client, clock):
    store = _store(query_client, clock, ttl=60)
    orchestrator = store.get_or_create("s1")

    clock.advance(50)
    assert store.get("s1") is orchestrator
    clock.advance(50)
    assert store.get("s1") is orchestrator

    clock.advance(61)
    assert store.get("s1") is None
    assert len(store) == 0


def test_expired_session_is_replaced(query_client, clock):
    store = _store(query_client, clock, ttl=60)
    old = store.get_or_create("s1")
    clock.advance(120)
    assert store.get_or_create("s1") is not old


def test_clear_and_sweep(query_client, clock, capsys):
    store = _store(query_client, clock, ttl=60)
    store.get_or_create("a")
    store.get_or_create("b")
    assert store.clear("a") is True
    assert store.clear("a") is False

    clock.advance(30)
    store.get_or_create("c")
    clock.advance(40)
    assert store.sweep() == 1
    assert store.get("c") is not None
    assert '"event":"session_sweep"' in capsys.readouterr().out


def test_extras_live_and_die_with_the_session(query_client, clock):
    store = _store(query_client, clock, ttl=60)
    store.extras("s1")["phone"] = "verification"
    assert store.extras("s1") == {"phone": "verification"}
    assert len(store) == 1

    clock.advance(61)
    assert store.sweep() == 1
    assert store.extras("s1") == {}
