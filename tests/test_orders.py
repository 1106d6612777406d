"""Tests for order placement, pricing and the order lifecycle."""

import re

import pytest

from conftest import REMINDER_HANDLES, auth_headers
from coupons import CouponService
from customers import CustomerService
from errors import BadRequestError, EmailDeliveryError
from orders import OrderService
from referrals import ReferralService
from schemas import OrderCreate, OrderItemInput


def place(client, customer, items, **extra):
    body = {"items": items, **extra}
    return client.post("/orders", json=body, headers=auth_headers(customer))


def line(product, qty):
    return {"product_id": str(product["_id"]), "qty": qty}


@pytest.fixture
def referral_owner(db, make_customer):
    """A customer whose personal code grants 10% off."""
    program_id = db["referrals"].insert_one(
        {"name": "Friends", "discount_type": "percent", "discount_value": 10, "active": True}
    ).inserted_id
    owner = make_customer(email="owner@example.com", referral_program_id=program_id)
    owner["program_id"] = program_id
    return owner


class TestPlaceOrder:
    def test_reserves_stock_then_rejects_when_exhausted(self, client, db, customer, make_product):
        product = make_product(name="Mango Bites", price=10.0, stock_qty=5)

        response = place(client, customer, [line(product, 3)])
        assert response.status_code == 201
        assert db["products"].find_one({"_id": product["_id"]})["stock_qty"] == 2

        response = place(client, customer, [line(product, 3)])
        assert response.status_code == 400
        assert response.json()["detail"] == "Not enough stock for Mango Bites"
        assert db["products"].find_one({"_id": product["_id"]})["stock_qty"] == 2
        assert db["orders"].count_documents({}) == 1

    def test_order_document(self, client, customer, make_product):
        product = make_product(price=12.5, stock_qty=4)

        data = place(client, customer, [line(product, 2)], shipping_name="Pat Doe").json()
        assert re.fullmatch(r"[0-9a-f]{8}", data["order_id"])
        assert data["status"] == "pending"
        assert data["customer_id"] == str(customer["_id"])
        assert data["subtotal"] == 25.0
        assert data["discount_amount"] == 0.0
        assert data["total"] == 25.0
        assert data["shipping_name"] == "Pat Doe"
        assert data["items"] == [
            {
                "product_id": str(product["_id"]),
                "name": product["name"],
                "price": 12.5,
                "qty": 2,
                "image_url": None,
            }
        ]

    def test_repeated_lines_are_merged(self, client, db, customer, make_product):
        product = make_product(stock_qty=5)

        data = place(client, customer, [line(product, 2), line(product, 1)]).json()
        assert len(data["items"]) == 1
        assert data["items"][0]["qty"] == 3
        assert db["products"].find_one({"_id": product["_id"]})["stock_qty"] == 2

    def test_sends_confirmation_and_schedules_reminders(self, client, db, customer, make_product, email, reminders):
        product = make_product()

        data = place(client, customer, [line(product, 1)]).json()
        email.send_order_confirmation.assert_called_once()
        to, details = email.send_order_confirmation.call_args.args
        assert to == customer["email"]
        assert details["id"] == data["order_id"]
        reminders.schedule_payment_reminders.assert_called_once()

        assert data["reminder_message_ids"] == REMINDER_HANDLES
        stored = db["orders"].find_one({"order_id": data["order_id"]})
        assert stored["reminder_message_ids"] == REMINDER_HANDLES

    def test_email_failure_does_not_fail_the_order(self, client, customer, make_product, email):
        email.send_order_confirmation.side_effect = EmailDeliveryError("down")
        product = make_product()

        response = place(client, customer, [line(product, 1)])
        assert response.status_code == 201

    def test_empty_order(self, client, customer):
        response = place(client, customer, [])
        assert response.status_code == 400
        assert response.json()["detail"] == "Order must include at least 1 item"

    def test_unknown_product(self, client, customer):
        response = place(client, customer, [{"product_id": "64b000000000000000000000", "qty": 1}])
        assert response.status_code == 400
        assert response.json()["detail"] == "One or more products do not exist"

    def test_requires_login(self, client, make_product):
        product = make_product()
        response = client.post("/orders", json={"items": [line(product, 1)]})
        assert response.status_code == 401
        assert response.json()["error_type"] == "UnauthorizedError"


class TestReferralPricing:
    def test_percent_referral(self, client, customer, make_product, referral_owner):
        product = make_product(price=25.0)

        data = place(client, customer, [line(product, 2)], referral_code=referral_owner["referral_code"].lower()).json()
        assert data["subtotal"] == 50.0
        assert data["discount_amount"] == 5.0
        assert data["total"] == 45.0
        assert data["referral_code_used"] == referral_owner["referral_code"]
        assert data["referral_owner_customer_id"] == str(referral_owner["_id"])
        assert data["referral_program_id"] == str(referral_owner["program_id"])
        assert data["referral_discount_type"] == "percent"
        assert data["referral_discount_value"] == 10
        assert data["referral_discount_amount"] == 5.0

    def test_invalid_referral_leaves_stock_alone(self, client, db, customer, make_product):
        product = make_product(stock_qty=5)

        response = place(client, customer, [line(product, 1)], referral_code="NOPE1234")
        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid referral code"
        assert db["products"].find_one({"_id": product["_id"]})["stock_qty"] == 5

    def test_inactive_program_is_rejected(self, client, db, customer, make_product, referral_owner):
        db["referrals"].update_one({"_id": referral_owner["program_id"]}, {"$set": {"active": False}})
        product = make_product()

        response = place(client, customer, [line(product, 1)], referral_code=referral_owner["referral_code"])
        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid referral code"

    def test_validate_referral_endpoint(self, client, referral_owner):
        response = client.get(f"/orders/validate-referral/{referral_owner['referral_code']}")
        assert response.status_code == 200
        assert response.json() == {
            "code": referral_owner["referral_code"],
            "discount_type": "percent",
            "discount_value": 10,
            "program_name": "Friends",
        }


class TestCouponPricing:
    def test_coupons_stack_up_to_the_subtotal(self, client, db, customer, make_product):
        coupons = CouponService(db)
        first = coupons.create(str(customer["_id"]), 20)
        second = coupons.create(str(customer["_id"]), 40)
        product = make_product(price=25.0)

        data = place(client, customer, [line(product, 2)], coupon_codes=[first["code"], second["code"]]).json()
        assert data["subtotal"] == 50.0
        assert data["coupon_discount"] == 50.0
        assert data["discount_amount"] == 50.0
        assert data["total"] == 0.0
        assert data["coupon_codes_used"] == [first["code"], second["code"]]

        for coupon in (first, second):
            stored = db["coupons"].find_one({"_id": coupon["_id"]})
            assert stored["is_used"] is True
            assert str(stored["used_in_order_id"]) == data["id"]

    def test_referral_applies_before_coupons(self, client, db, customer, make_product, referral_owner):
        coupon = CouponService(db).create(str(customer["_id"]), 48)
        product = make_product(price=50.0)

        data = place(
            client, customer, [line(product, 1)],
            referral_code=referral_owner["referral_code"],
            coupon_codes=[coupon["code"]],
        ).json()
        assert data["referral_discount_amount"] == 5.0
        assert data["coupon_discount"] == 45.0
        assert data["discount_amount"] == 50.0
        assert data["total"] == 0.0

    def test_duplicate_codes_count_once(self, client, db, customer, make_product):
        coupon = CouponService(db).create(str(customer["_id"]), 3)
        product = make_product(price=10.0)

        data = place(client, customer, [line(product, 1)], coupon_codes=[coupon["code"], coupon["code"].lower()]).json()
        assert data["coupon_codes_used"] == [coupon["code"]]
        assert data["coupon_discount"] == 3.0

    def test_at_most_three_coupons(self, client, db, customer, make_product):
        coupons = CouponService(db)
        codes = [coupons.create(str(customer["_id"]), 1)["code"] for _ in range(4)]
        product = make_product()

        response = place(client, customer, [line(product, 1)], coupon_codes=codes)
        assert response.status_code == 400
        assert response.json()["detail"] == "A maximum of 3 coupons can be applied"

    def test_someone_elses_coupon(self, client, db, customer, make_customer, make_product):
        other = make_customer(email="other@example.com")
        coupon = CouponService(db).create(str(other["_id"]), 5)
        product = make_product()

        response = place(client, customer, [line(product, 1)], coupon_codes=[coupon["code"]])
        assert response.status_code == 400
        assert response.json()["detail"] == "This coupon does not belong to you"

    def test_used_coupon(self, client, db, customer, make_product):
        coupon = CouponService(db).create(str(customer["_id"]), 5)
        product = make_product()
        assert place(client, customer, [line(product, 1)], coupon_codes=[coupon["code"]]).status_code == 201

        response = place(client, customer, [line(product, 1)], coupon_codes=[coupon["code"]])
        assert response.status_code == 400
        assert response.json()["detail"] == "This coupon has already been used"


class TestStockReservation:
    def test_earlier_reservations_stay_taken_when_a_later_item_runs_out(self, db, customer, make_product, email, reminders):
        first = make_product(name="First", stock_qty=5)
        second = make_product(name="Second", stock_qty=5)

        coupons = CouponService(db)
        customers = CustomerService(db, coupons)
        service = OrderService(db, customers, ReferralService(db, customers), coupons, email, reminders)

        snapshot = service._snapshot_items

        def sell_out_second(qty_by_product):
            items = snapshot(qty_by_product)
            db["products"].update_one({"_id": second["_id"]}, {"$set": {"stock_qty": 0}})
            return items

        service._snapshot_items = sell_out_second
        payload = OrderCreate(
            items=[OrderItemInput(product_id=str(first["_id"]), qty=2), OrderItemInput(product_id=str(second["_id"]), qty=2)]
        )

        with pytest.raises(BadRequestError, match="Not enough stock for Second"):
            service.create(str(customer["_id"]), payload)

        assert db["products"].find_one({"_id": first["_id"]})["stock_qty"] == 3
        assert db["orders"].count_documents({}) == 0


class TestMyOrders:
    def test_lists_only_own_orders(self, client, customer, make_customer, make_product):
        other = make_customer(email="other@example.com")
        product = make_product()
        mine = place(client, customer, [line(product, 1)]).json()
        place(client, other, [line(product, 1)])

        response = client.get("/orders/my", headers=auth_headers(customer))
        assert [o["order_id"] for o in response.json()] == [mine["order_id"]]

        response = client.get(f"/orders/my/{mine['id']}", headers=auth_headers(other))
        assert response.status_code == 404

    def test_cancel_restores_stock_and_stops_reminders(self, client, db, customer, make_product, reminders):
        product = make_product(stock_qty=5)
        order = place(client, customer, [line(product, 2)]).json()

        response = client.patch(f"/orders/my/{order['id']}/cancel", headers=auth_headers(customer))
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "canceled"
        assert data["reminder_message_ids"] == []
        assert db["products"].find_one({"_id": product["_id"]})["stock_qty"] == 5
        reminders.cancel.assert_called_once_with(REMINDER_HANDLES)

    def test_only_pending_orders_can_be_canceled(self, client, db, customer, admin, make_product, reminders):
        product = make_product(stock_qty=10)
        order = place(client, customer, [line(product, 1)]).json()
        client.patch(f"/orders/{order['id']}/status", json={"status": "paid"}, headers=auth_headers(admin))
        reminders.cancel.reset_mock()

        response = client.patch(f"/orders/my/{order['id']}/cancel", headers=auth_headers(customer))
        assert response.status_code == 400
        assert response.json()["detail"] == "Only pending orders can be canceled"
        assert db["products"].find_one({"_id": product["_id"]})["stock_qty"] == 9
        assert db["orders"].find_one({"order_id": order["order_id"]})["status"] == "paid"
        reminders.cancel.assert_not_called()

    def test_cannot_cancel_someone_elses_order(self, client, customer, make_customer, make_product):
        other = make_customer(email="other@example.com")
        product = make_product()
        order = place(client, customer, [line(product, 1)]).json()

        response = client.patch(f"/orders/my/{order['id']}/cancel", headers=auth_headers(other))
        assert response.status_code == 404


class TestAdminOrders:
    def test_paid_stops_reminders(self, client, db, customer, admin, make_product, reminders):
        product = make_product()
        order = place(client, customer, [line(product, 1)]).json()

        response = client.patch(f"/orders/{order['id']}/status", json={"status": "paid"}, headers=auth_headers(admin))
        assert response.status_code == 200
        assert response.json()["status"] == "paid"
        assert response.json()["customer_email"] == customer["email"]
        reminders.cancel.assert_called_once_with(REMINDER_HANDLES)
        assert db["orders"].find_one({"order_id": order["order_id"]})["reminder_message_ids"] == []

    def test_invalid_status(self, client, customer, admin, make_product):
        product = make_product()
        order = place(client, customer, [line(product, 1)]).json()

        response = client.patch(f"/orders/{order['id']}/status", json={"status": "lost"}, headers=auth_headers(admin))
        assert response.status_code == 422

    def test_customers_cannot_change_status(self, client, customer, make_product):
        product = make_product()
        order = place(client, customer, [line(product, 1)]).json()

        response = client.patch(f"/orders/{order['id']}/status", json={"status": "paid"}, headers=auth_headers(customer))
        assert response.status_code == 403
        assert response.json() == {"detail": "Admin only", "error_type": "ForbiddenError"}

    def test_shipment(self, client, customer, admin, make_product):
        product = make_product()
        order = place(client, customer, [line(product, 1)]).json()

        response = client.patch(
            f"/orders/{order['id']}/shipment",
            json={"shipping_carrier": "AusPost", "tracking_number": "AP123"},
            headers=auth_headers(admin),
        )
        assert response.status_code == 200
        assert response.json()["shipping_carrier"] == "AusPost"
        assert response.json()["tracking_number"] == "AP123"

    def test_list_all_includes_customer(self, client, customer, admin, make_product):
        product = make_product()
        place(client, customer, [line(product, 1)])

        data = client.get("/orders", headers=auth_headers(admin)).json()
        assert len(data) == 1
        assert data[0]["customer_email"] == customer["email"]
        assert data[0]["customer_info"]["id"] == str(customer["_id"])
        assert "password_hash" not in data[0]["customer_info"]

    def test_orders_by_referral_code(self, client, customer, admin, make_product, referral_owner):
        product = make_product()
        place(client, customer, [line(product, 1)], referral_code=referral_owner["referral_code"])
        place(client, customer, [line(product, 1)])

        response = client.get(f"/orders/referral/{referral_owner['referral_code']}", headers=auth_headers(admin))
        assert response.status_code == 200
        assert len(response.json()) == 1
