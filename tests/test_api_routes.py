import pytest
from fastapi.testclient import TestClient


@pytest.fixture
def client():
    from main import app

    with TestClient(app) as c:
        yield c


def _pick_outbound(client, sid):
    r = client.post(f"/journey/{sid}/outbound/search", json={"id_from": "1", "id_to": "3", "date": "2031-06-01"})
    assert r.status_code == 200
    routes = r.json()["data"]["outbound_routes"]
    direct = next(x for x in routes if not x["trips"])
    r = client.post(f"/journey/{sid}/outbound/select", json={"interval_id": direct["interval_id"]})
    assert r.json()["state"] == "outbound_selected"
    return direct


def test_root_and_health(client):
    assert client.get("/").json()["provider"] == "mock"
    health = client.get("/health").json()
    assert health["status"] == "healthy"
    assert set(health["checks"]) == {"cache", "bussystem"}


def test_autocomplete_endpoint(client):
    r = client.get("/points/autocomplete", params={"q": "Ber"})
    body = r.json()
    assert body["success"] is True
    assert body["data"][0]["point_id"] == "3"
    assert client.get("/points/autocomplete", params={"q": "Ber"}).json()["cached"] is True

    short = client.get("/points/autocomplete", params={"q": "B"}).json()
    assert short["error"]["code"] == "INVALID_QUERY"


def test_countries_endpoint(client):
    assert len(client.get("/countries").json()["data"]) == 6


def test_round_trip_journey(client):
    sid = "api-rt"
    _pick_outbound(client, sid)
    client.post(f"/journey/{sid}/round-trip/toggle")

    too_early = client.post(f"/journey/{sid}/return/search", json={"date": "2031-05-30"}).json()
    assert too_early["error_code"] == "INVALID_RETURN_DATE"

    r = client.post(f"/journey/{sid}/return/search", json={"date": "2031-06-05"}).json()
    returns = r["data"]["return_routes"]
    assert returns
    r = client.post(f"/journey/{sid}/return/select", json={"interval_id": returns[0]["interval_id"]}).json()
    assert r["state"] == "return_selected"
    assert r["data"]["trip_booking"]["is_round_trip"] is True

    off = client.post(f"/journey/{sid}/round-trip/toggle").json()
    assert off["state"] == "outbound_selected"
    assert off["data"]["trip_booking"]["return"] is None

    assert client.delete(f"/journey/{sid}").json()["status"] == "cleared"
    assert client.get(f"/journey/{sid}").json()["state"] == "idle"


def test_unknown_interval_is_404(client):
    r = client.post("/journey/nobody/outbound/select", json={"interval_id": "missing"})
    assert r.status_code == 404
    assert r.json()["error"]["code"] == "INVALID_PARAMS"


def test_bad_search_date_is_400(client):
    r = client.post("/journey/s/outbound/search", json={"id_from": "1", "id_to": "3", "date": "xyzzy"})
    assert r.status_code == 400


def test_order_lifecycle(client):
    direct = _pick_outbound(client, "api-order")
    order = {
        "trips": [{"date": "2031-06-01", "interval_id": direct["interval_id"],
                   "seats_per_passenger": ["1"], "need_orderdata": True}],
        "passengers": [{"name": "Ion", "surname": "Popescu", "phone": "+37369123456"}],
    }
    r = client.post("/orders", json=order)
    assert r.status_code == 200
    body = r.json()
    order_id = body["reservation"]["order_id"]
    assert body["countdown"]["state"] == "reserved"

    fetched = client.get(f"/orders/{order_id}").json()
    assert fetched["data"]["status"] == "reserve_ok"
    assert fetched["reservation"]["terminal"] is False

    bought = client.post(f"/orders/{order_id}/buy")
    assert bought.json()["success"] is True
    again = client.post(f"/orders/{order_id}/buy")
    assert again.status_code == 409
    assert again.json()["error"]["code"] == "RESERVATION_TERMINAL"


def test_invalid_order_is_422(client):
    order = {
        "trips": [{"date": "2031-06-01", "interval_id": "x", "seats_per_passenger": ["1"]}],
        "passengers": [{"name": "", "surname": ""}],
    }
    r = client.post("/orders", json=order)
    assert r.status_code == 422
    assert {e["field"] for e in r.json()["validation_errors"]} >= {"name", "surname", "phone"}


def test_cancellation_endpoints(client):
    direct = _pick_outbound(client, "api-cancel")
    order = {
        "trips": [{"date": "2031-06-01", "interval_id": direct["interval_id"],
                   "seats_per_passenger": ["1", "2"], "need_orderdata": True}],
        "passengers": [
            {"name": "Ion", "surname": "Popescu", "phone": "+37369123456"},
            {"name": "Maria", "surname": "Popescu"},
        ],
    }
    created = client.post("/orders", json=order).json()["reservation"]
    tickets = client.get(f"/orders/{created['order_id']}").json()["data"]["tickets"]
    refs = [{"ticket_id": t["ticket_id"]} for t in tickets] + [{"ticket_id": "missing"}]

    estimate = client.post("/cancellations/estimate", json={"tickets": refs}).json()["data"]
    assert len(estimate["estimates"]) == 2
    assert estimate["missing"] == 1
    assert estimate["totals"]["currency"] == "EUR"
    assert estimate["can_cancel_individual"] is True

    one = client.post("/cancellations/ticket", json={"ticket_id": tickets[0]["ticket_id"]}).json()
    assert one["data"]["type"] == "ticket"

    rest = client.post("/cancellations/order", json={"order_id": created["order_id"],
                                                     "security": created["security"]}).json()
    assert rest["success"] is True


def test_cancel_order_checks_security(client):
    direct = _pick_outbound(client, "api-cancel-sec")
    order = {
        "trips": [{"date": "2031-06-01", "interval_id": direct["interval_id"],
                   "seats_per_passenger": ["1"], "need_orderdata": True}],
        "passengers": [{"name": "Ion", "surname": "Popescu", "phone": "+37369123456"}],
    }
    created = client.post("/orders", json=order).json()["reservation"]

    wrong = client.post("/cancellations/order", json={"order_id": created["order_id"], "security": "nope"})
    assert wrong.status_code == 403
    assert wrong.json()["error"]["code"] == "SECURITY_MISMATCH"
    missing = client.post("/cancellations/order", json={"order_id": created["order_id"]})
    assert missing.status_code == 403
    assert client.get(f"/orders/{created['order_id']}").json()["reservation"]["state"] == "reserved"

    ok = client.post("/cancellations/order", json={"order_id": created["order_id"],
                                                   "security": created["security"]})
    assert ok.status_code == 200
    assert ok.json()["success"] is True


def test_finished_reservations_are_pruned(client):
    direct = _pick_outbound(client, "api-prune")
    order = {
        "trips": [{"date": "2031-06-01", "interval_id": direct["interval_id"],
                   "seats_per_passenger": ["1"], "need_orderdata": True}],
        "passengers": [{"name": "Ion", "surname": "Popescu", "phone": "+37369123456"}],
    }
    paid = client.post("/orders", json=order).json()["reservation"]["order_id"]
    open_ = client.post("/orders", json=order).json()["reservation"]["order_id"]
    client.post(f"/orders/{paid}/buy")

    state = client.app.app.state
    assert state.sweeper.housekeeping
    state.sweeper.sweep_once()
    assert paid not in state.reservations
    assert open_ in state.reservations


def test_prune_reservations_keeps_live_ones():
    from main import prune_reservations

    class Workflow:
        def __init__(self, terminal):
            self.is_terminal = terminal

    reservations = {"1": Workflow(True), "2": Workflow(False), "3": Workflow(True)}
    assert prune_reservations(reservations) == 2
    assert list(reservations) == ["2"]
    assert prune_reservations(reservations) == 0


def test_plan_endpoint(client):
    body = client.get("/plan/1").json()
    assert body["success"] is True
    assert body["data"]["bustype_id"] == "1"
    assert body["data"]["floors"][0]["rows"][0]["seats"][2]["number"] is None
    assert client.get("/plan/1").json()["cached"] is True
    assert client.get("/plan/1", params={"orientation": "x"}).status_code == 400


def test_phone_verification_gates_order(client):
    sid = "api-sms"
    client.app.app.state.api.sms_phones.add("37369123456")
    direct = _pick_outbound(client, sid)
    order = {
        "trips": [{"date": "2031-06-01", "interval_id": direct["interval_id"],
                   "seats_per_passenger": ["1"], "need_orderdata": True}],
        "passengers": [{"name": "Ion", "surname": "Popescu", "phone": "+37369123456"}],
    }

    assert client.post(f"/journey/{sid}/phone/send-code").status_code == 404
    checked = client.post(f"/journey/{sid}/phone/check", json={"phone": "+37369123456"}).json()
    assert checked["phone"]["state"] == "required"

    blocked = client.post("/orders", params={"session_id": sid}, json=order)
    assert blocked.status_code == 403
    assert blocked.json()["error"]["code"] == "SMS_VALIDATION_REQUIRED"

    assert client.post(f"/journey/{sid}/phone/send-code").json()["phone"]["state"] == "code_sent"
    wrong = client.post(f"/journey/{sid}/phone/verify", json={"code": "000000"}).json()
    assert wrong["phone"]["attempts_remaining"] == 2
    verified = client.post(f"/journey/{sid}/phone/verify", json={"code": "123456"}).json()
    assert verified["phone"]["verified"] is True

    placed = client.post("/orders", params={"session_id": sid}, json=order)
    assert placed.status_code == 200
    assert placed.json()["reservation"]["order_id"]
