from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from app.dependencies import get_runtime
from app.main import app
from app.routers.order import LINK_EXPIRED, ORDER_ACCEPTED, ORDER_FAILED
from app.schemas.order import AddressSuggestion
from app.services.order_token import ChatOrderToken, CrmOrderToken, OrderTokenCodec


@pytest.fixture
def runtime():
    dadata = MagicMock()
    dadata.suggest_address = AsyncMock(return_value=[AddressSuggestion(value="г Самара, ул Ленина, д 5")])
    submission = MagicMock()
    submission.submit = AsyncMock()
    return SimpleNamespace(
        tokens=OrderTokenCodec("secret", "https://orange.example"),
        submission=submission,
        dadata=dadata,
    )


@pytest.fixture
def client(runtime):
    app.dependency_overrides[get_runtime] = lambda: runtime
    yield TestClient(app)
    app.dependency_overrides.clear()


def _form(token: str, **overrides) -> dict:
    data = {
        "token": token,
        "orderType": "delivery",
        "date": "20.12.2025",
        "time": "Вечер (17:00-21:00)",
        "address": "Самара, Ленина 5",
        "cardText": "",
        "yourName": "Иван",
        "yourPhone": "+79991234567",
        "recipientName": "Ольга",
        "recipientPhone": "+79997654321",
    }
    data.update(overrides)
    return data


class TestPages:
    def test_order_page_with_valid_token(self, client, runtime):
        token = runtime.tokens.issue_chat_token("C1", "U1")

        response = client.get("/order", params={"t": token})

        assert response.status_code == 200
        assert "text/html" in response.headers["content-type"]

    @pytest.mark.parametrize("params", [{}, {"t": "garbage"}, {"t": "a.1.zzzzzz.forged"}])
    def test_order_page_redirects_when_invalid(self, client, params):
        response = client.get("/order", params=params, follow_redirects=False)

        assert response.status_code == 302
        assert response.headers["location"] == "/expired.html"

    def test_expired_page(self, client):
        response = client.get("/expired.html")

        assert response.status_code == 200
        assert "Ссылка устарела" in response.text

    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok"}


class TestSubmitOrder:
    def test_chat_token_order(self, client, runtime):
        token = runtime.tokens.issue_chat_token("C1", "U1", {"category": "premium"})

        response = client.post("/api/order", json=_form(token))

        assert response.status_code == 200
        assert response.json() == {"success": True, "message": ORDER_ACCEPTED}
        order, verified = runtime.submission.submit.call_args.args
        assert isinstance(verified, ChatOrderToken)
        assert order.product_info == {"category": "premium"}
        assert order.card_text == "Без подписи"

    def test_deal_token_order(self, client, runtime):
        token = runtime.tokens.issue_deal_token(31051293)

        response = client.post("/api/order", json=_form(token))

        assert response.status_code == 200
        order, verified = runtime.submission.submit.call_args.args
        assert verified.deal_id == 31051293
        assert isinstance(verified, CrmOrderToken)
        assert order.product_info is None

    def test_invalid_token(self, client, runtime):
        response = client.post("/api/order", json=_form("forged.token"))

        assert response.status_code == 400
        assert response.json() == {"success": False, "error": LINK_EXPIRED}
        runtime.submission.submit.assert_not_called()

    def test_validation_error(self, client, runtime):
        token = runtime.tokens.issue_chat_token("C1", "U1")

        response = client.post("/api/order", json=_form(token, address=""))

        assert response.status_code == 400
        assert response.json()["error"] == "Укажите адрес доставки"

    def test_not_json(self, client):
        response = client.post("/api/order", content=b"not json", headers={"content-type": "application/json"})

        assert response.status_code == 400
        assert response.json()["error"] == LINK_EXPIRED

    @pytest.mark.parametrize("token", [12345, ["a", "b"], {"t": "x"}])
    def test_malformed_token_is_expired_link(self, client, runtime, token):
        response = client.post("/api/order", json=_form(token))

        assert response.status_code == 400
        assert response.json() == {"success": False, "error": LINK_EXPIRED}
        runtime.submission.submit.assert_not_called()

    def test_malformed_field_is_expired_link(self, client, runtime):
        token = runtime.tokens.issue_chat_token("C1", "U1")

        response = client.post("/api/order", json=_form(token, askRecipientAddress="maybe"))

        assert response.status_code == 400
        assert response.json()["error"] == LINK_EXPIRED

    def test_null_flag_and_numeric_phone(self, client, runtime):
        token = runtime.tokens.issue_chat_token("C1", "U1")

        response = client.post("/api/order", json=_form(token, askRecipientAddress=None, yourPhone=79991234567))

        assert response.status_code == 200
        order, _ = runtime.submission.submit.call_args.args
        assert order.address == "Самара, Ленина 5"
        assert order.your_phone == "79991234567"

    def test_processing_failure(self, client, runtime):
        runtime.submission.submit.side_effect = RuntimeError("amoCRM down")
        token = runtime.tokens.issue_deal_token(31051293)

        response = client.post("/api/order", json=_form(token))

        assert response.status_code == 500
        assert response.json() == {"success": False, "error": ORDER_FAILED}


class TestAddressSuggest:
    def test_short_query(self, client, runtime):
        assert client.get("/api/address-suggest", params={"q": "Са"}).json() == {"suggestions": []}
        runtime.dadata.suggest_address.assert_not_called()

    def test_suggestions(self, client, runtime):
        response = client.get("/api/address-suggest", params={"q": "Самара Ленина"})

        assert response.json()["suggestions"][0]["value"] == "г Самара, ул Ленина, д 5"
        runtime.dadata.suggest_address.assert_awaited_once_with("Самара Ленина")
