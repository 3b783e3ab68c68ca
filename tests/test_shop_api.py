"""HTTP tests for the storefront blueprint."""

import hashlib
import hmac
import json
import time
from datetime import timedelta
from decimal import Decimal

from core import db, Book, GiftCard, Order, ShareableList, utcnow


class TestWishlist:
    def test_lookup_by_share_code(self, client, wishlist, books):
        resp = client.get("/api/lists/reader01")
        assert resp.status_code == 200
        data = resp.get_json()
        assert data["list"]["share_code"] == "READER01"
        assert data["user"]["username"] == "reader"
        assert "email" not in data["user"]
        assert [b["title"] for b in data["books"]] == ["Emma", "Dune", "Middlemarch"]

    def test_only_wanted_books_are_listed(self, client, wishlist, books):
        books[2].status = "read"
        db.session.commit()
        titles = [b["title"] for b in client.get("/api/lists/READER01").get_json()["books"]]
        assert titles == ["Emma", "Dune"]

    def test_view_count_increments(self, client, wishlist):
        client.get("/api/lists/READER01")
        client.get("/api/lists/READER01")
        shared = db.session.get(ShareableList, wishlist.id)
        assert shared.view_count == 2
        assert shared.last_viewed_at is not None

    def test_unknown_code_is_404(self, client, wishlist):
        resp = client.get("/api/lists/NOPE")
        assert resp.status_code == 404
        assert resp.get_json() == {"error": "List not found"}

    def test_private_list_is_404(self, client, wishlist):
        wishlist.is_public = False
        db.session.commit()
        assert client.get("/api/lists/READER01").status_code == 404


class TestCart:
    def test_add_and_price_cart(self, client, books):
        client.post("/api/cart/items", json={"bookId": books[0].id})
        resp = client.post("/api/cart/items", json={"bookId": books[1].id})
        data = resp.get_json()
        assert len(data["items"]) == 2
        assert data["subtotal"] == "20.00"
        assert data["shipping"] == "5.99"
        assert data["tax"] == "1.90"
        assert data["total"] == "27.89"

    def test_adding_twice_bumps_quantity(self, client, books):
        client.post("/api/cart/items", json={"bookId": books[0].id})
        data = client.post("/api/cart/items", json={"bookId": books[0].id, "quantity": 2}).get_json()
        assert data["items"][0]["quantity"] == 3
        assert data["items"][0]["line_total"] == "30.00"

    def test_remove_and_clear(self, client, books):
        client.post("/api/cart/items", json={"bookId": books[0].id})
        client.post("/api/cart/items", json={"bookId": books[1].id})
        data = client.delete(f"/api/cart/items/{books[0].id}").get_json()
        assert [i["book"]["id"] for i in data["items"]] == [books[1].id]
        data = client.delete("/api/cart").get_json()
        assert data["items"] == []
        assert data["total"] == "0.00"

    def test_unknown_book(self, client, books):
        assert client.post("/api/cart/items", json={"bookId": "missing"}).status_code == 404

    def test_bad_quantity(self, client, books):
        resp = client.post("/api/cart/items", json={"bookId": books[0].id, "quantity": 0})
        assert resp.status_code == 400


class TestGiftCardCheck:
    def test_valid(self, client, make_card):
        make_card("SAVE10", "25.00")
        resp = client.post("/api/gift-cards/check", json={"code": "save10"})
        assert resp.get_json() == {"isValid": True, "balance": "25.00", "code": "SAVE10"}

    def test_expired(self, client, make_card):
        make_card("EXPIRED1", "25.00", expires_at=utcnow() - timedelta(days=1))
        resp = client.post("/api/gift-cards/check", json={"code": "expired1"})
        assert resp.status_code == 200
        assert resp.get_json() == {"isValid": False, "message": "Gift card has expired"}

    def test_missing_code_is_400(self, client, app):
        resp = client.post("/api/gift-cards/check", json={})
        assert resp.status_code == 400
        assert resp.get_json()["isValid"] is False


class TestOrders:
    def test_card_checkout_flow(self, client, books, address, processor, make_card):
        make_card("SAVE10", "25.00")
        resp = client.post("/api/orders", json={
            "items": [{"bookId": books[0].id}, {"bookId": books[1].id}],
            "shippingAddress": address,
            "giftInfo": {"isGift": True, "message": "Enjoy!", "giftCardCode": "SAVE10"},
            "subtotal": 20.0, "tax": 1.9, "shipping": 5.99, "total": 27.89,
        })
        assert resp.status_code == 201
        data = resp.get_json()
        assert data["amountDue"] == "2.89"
        assert data["order"]["status"] == "pending"
        assert data["clientSecret"].endswith("_secret")
        order_id = data["orderId"]

        pending = client.post("/api/orders/complete", json={"orderId": order_id})
        assert pending.status_code == 402

        processor.succeed(data["order"]["payment_id"])
        done = client.post("/api/orders/complete", json={"orderId": order_id})
        assert done.get_json() == {"success": True, "alreadySettled": False}
        again = client.post("/api/orders/complete", json={"orderId": order_id})
        assert again.get_json() == {"success": True, "alreadySettled": True}

        card = GiftCard.query.filter_by(code="SAVE10").one()
        assert card.current_balance == Decimal("0.00")
        assert card.status == "redeemed"

        summary = client.get(f"/api/orders/{order_id}").get_json()
        assert summary["order"]["status"] == "confirmed"
        assert summary["order"]["total"] == "27.89"
        assert summary["order"]["amount_paid"] == "2.89"
        assert {i["book_title"] for i in summary["items"]} == {"Dune", "Emma"}

    def test_gift_card_only_flow(self, client, books, address, make_card):
        make_card("FULL50", "50.00")
        data = client.post("/api/orders", json={
            "items": [{"bookId": books[0].id}],
            "shippingAddress": address,
            "giftInfo": {"giftCardCode": "FULL50"},
        }).get_json()
        assert data["amountDue"] == "0.00"
        assert data["clientSecret"] is None

        resp = client.post("/api/orders/confirm-gift-card-only",
                           json={"orderId": data["orderId"], "giftCardCode": "FULL50"})
        assert resp.get_json()["success"] is True
        card = GiftCard.query.filter_by(code="FULL50").one()
        assert card.current_balance == Decimal("33.06")
        assert card.status == "active"

    def test_order_from_session_cart_clears_it(self, client, books, address):
        client.post("/api/cart/items", json={"bookId": books[2].id})
        resp = client.post("/api/orders", json={"shippingAddress": address})
        assert resp.status_code == 201
        order = resp.get_json()["order"]
        assert order["subtotal"] == "40.00"
        assert order["shipping"] == "0.00"
        assert client.get("/api/cart").get_json()["items"] == []

    def test_tampered_total_is_400(self, client, books, address):
        resp = client.post("/api/orders", json={
            "items": [{"bookId": books[0].id}], "shippingAddress": address, "total": 1.00,
        })
        assert resp.status_code == 400
        assert "does not match" in resp.get_json()["error"]
        assert Order.query.count() == 0

    def test_non_json_body_is_400(self, client, app):
        resp = client.post("/api/orders", data="nope", content_type="text/plain")
        assert resp.status_code == 400

    def test_unknown_order_is_404(self, client, app):
        assert client.post("/api/orders/complete", json={"orderId": "nope"}).status_code == 404
        assert client.get("/api/orders/nope").status_code == 404

    def test_completing_cancelled_order_is_409(self, client, books, address, processor):
        data = client.post("/api/orders", json={
            "items": [{"bookId": books[0].id}], "shippingAddress": address,
        }).get_json()
        processor.succeed(data["order"]["payment_id"])
        db.session.get(Order, data["orderId"]).status = "cancelled"
        db.session.commit()

        resp = client.post("/api/orders/complete", json={"orderId": data["orderId"]})
        assert resp.status_code == 409
        assert "success" not in resp.get_json()

    def test_info_block_must_be_an_object(self, client, books, address):
        resp = client.post("/api/orders", json={
            "items": [{"bookId": books[0].id}], "shippingAddress": address, "giftInfo": "SAVE10",
        })
        assert resp.status_code == 400

    def test_book_can_be_bought_again_after_cancel(self, admin_client, books, address, make_card):
        make_card("FULL50", "50.00")
        order = {"items": [{"bookId": books[0].id}], "shippingAddress": address,
                 "giftInfo": {"giftCardCode": "FULL50"}}
        first = admin_client.post("/api/orders", json=order).get_json()
        admin_client.post("/api/orders/confirm-gift-card-only",
                          json={"orderId": first["orderId"], "giftCardCode": "FULL50"})
        assert admin_client.post("/api/orders", json=order).status_code == 400

        admin_client.patch(f"/admin/orders/{first['orderId']}/status", json={"status": "cancelled"})

        again = admin_client.post("/api/orders", json=order)
        assert again.status_code == 201


class TestWebhook:
    def place(self, client, books, address):
        return client.post("/api/orders", json={
            "items": [{"bookId": books[0].id}], "shippingAddress": address,
        }).get_json()["order"]

    def event(self, intent, event_type="payment_intent.succeeded"):
        return json.dumps({"type": event_type, "data": {"object": intent}}).encode()

    def post(self, client, body, secret="whsec_test", timestamp=None):
        timestamp = timestamp or int(time.time())
        digest = hmac.new(secret.encode(), f"{timestamp}.".encode() + body, hashlib.sha256).hexdigest()
        return client.post("/api/payments/webhook", data=body, content_type="application/json",
                           headers={"Stripe-Signature": f"t={timestamp},v1={digest}"})

    def test_succeeded_intent_settles_order(self, client, books, address, processor):
        order = self.place(client, books, address)
        body = self.event(processor.succeed(order["payment_id"]))

        resp = self.post(client, body)
        assert resp.get_json() == {"status": "ok", "orderId": order["id"]}
        assert db.session.get(Order, order["id"]).status == "confirmed"
        assert db.session.get(Book, books[0].id).is_purchased_gift

        again = self.post(client, body)
        assert again.get_json()["status"] == "already_settled"

    def test_other_events_are_ignored(self, client, app):
        resp = self.post(client, self.event({}, event_type="charge.refunded"))
        assert resp.get_json() == {"status": "ignored", "type": "charge.refunded"}

    def test_bad_signature_is_400(self, client, books, address, processor):
        order = self.place(client, books, address)
        body = self.event(processor.succeed(order["payment_id"]))

        assert self.post(client, body, secret="whsec_other").status_code == 400
        stale = self.post(client, body, timestamp=int(time.time()) - 3600)
        assert stale.status_code == 400
        unsigned = client.post("/api/payments/webhook", data=body, content_type="application/json")
        assert unsigned.status_code == 400
        assert db.session.get(Order, order["id"]).status == "pending"

    def test_no_secret_configured_is_503(self, client, app, books, address, processor):
        app.config["STRIPE_WEBHOOK_SECRET"] = ""
        order = self.place(client, books, address)
        body = self.event(processor.succeed(order["payment_id"]))

        resp = client.post("/api/payments/webhook", data=body, content_type="application/json")
        assert resp.status_code == 503
        assert db.session.get(Order, order["id"]).status == "pending"

    def test_forged_success_is_checked_with_processor(self, client, books, address, processor):
        order = self.place(client, books, address)
        payment_id = client.get(f"/api/orders/{order['id']}").get_json()["order"]["payment_id"]
        forged = {"id": payment_id, "status": "succeeded", "amount_received": 10**9,
                  "metadata": {"order_id": order["id"]}}

        resp = self.post(client, self.event(forged))
        assert resp.status_code == 402
        assert db.session.get(Order, order["id"]).status == "pending"

    def test_payment_on_cancelled_order(self, client, books, address, processor):
        order = self.place(client, books, address)
        db.session.get(Order, order["id"]).status = "cancelled"
        db.session.commit()

        resp = self.post(client, self.event(processor.succeed(order["payment_id"])))
        assert resp.status_code == 200
        assert resp.get_json() == {"status": "order_closed", "orderId": order["id"]}
        assert db.session.get(Order, order["id"]).status == "cancelled"
