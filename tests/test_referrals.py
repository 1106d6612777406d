"""Tests for referral programs and customer referral assignment."""

import pytest

from conftest import auth_headers


@pytest.fixture
def program(client, admin):
    response = client.post(
        "/referrals",
        json={"name": "Launch", "discount_type": "amount", "discount_value": 4},
        headers=auth_headers(admin),
    )
    assert response.status_code == 201
    return response.json()


class TestReferralPrograms:
    def test_create_list_get(self, client, admin, program):
        headers = auth_headers(admin)
        assert program["discount_type"] == "amount"
        assert program["active"] is True

        assert [p["id"] for p in client.get("/referrals", headers=headers).json()] == [program["id"]]
        assert client.get(f"/referrals/{program['id']}", headers=headers).json()["name"] == "Launch"

    def test_invalid_discount_type(self, client, admin):
        response = client.post(
            "/referrals",
            json={"name": "Bad", "discount_type": "bogo", "discount_value": 4},
            headers=auth_headers(admin),
        )
        assert response.status_code == 422

    def test_update(self, client, admin, program):
        response = client.patch(
            f"/referrals/{program['id']}",
            json={"discount_type": "percent", "discount_value": 15},
            headers=auth_headers(admin),
        )
        assert response.status_code == 200
        assert response.json()["discount_type"] == "percent"
        assert response.json()["discount_value"] == 15

    @pytest.mark.parametrize("field", ["name", "discount_type", "discount_value", "active"])
    def test_fields_cannot_be_nulled(self, client, admin, program, field):
        response = client.patch(f"/referrals/{program['id']}", json={field: None}, headers=auth_headers(admin))
        assert response.status_code == 422
        assert client.get(f"/referrals/{program['id']}", headers=auth_headers(admin)).json()[field] == program[field]

    def test_missing_program(self, client, admin):
        response = client.get("/referrals/64b000000000000000000000", headers=auth_headers(admin))
        assert response.status_code == 404
        assert response.json()["error_type"] == "NotFoundError"


class TestReferralAssignment:
    def test_assigning_a_program_activates_the_code(self, client, customer, admin, program):
        code = customer["referral_code"]
        assert client.get(f"/orders/validate-referral/{code}").status_code == 400

        response = client.patch(
            f"/customers/{customer['_id']}",
            json={"referral_program_id": program["id"]},
            headers=auth_headers(admin),
        )
        assert response.status_code == 200
        assert response.json()["referral_program_id"] == program["id"]
        assert response.json()["referral_code"] == code
        assert "password_hash" not in response.json()

        response = client.get(f"/orders/validate-referral/{code}")
        assert response.status_code == 200
        assert response.json()["discount_value"] == 4

    def test_deactivated_program_invalidates_codes(self, client, customer, admin, program):
        headers = auth_headers(admin)
        client.patch(f"/customers/{customer['_id']}", json={"referral_program_id": program["id"]}, headers=headers)
        client.patch(f"/referrals/{program['id']}", json={"active": False}, headers=headers)

        response = client.get(f"/orders/validate-referral/{customer['referral_code']}")
        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid referral code"

    def test_unknown_program(self, client, customer, admin):
        response = client.patch(
            f"/customers/{customer['_id']}",
            json={"referral_program_id": "64b000000000000000000000"},
            headers=auth_headers(admin),
        )
        assert response.status_code == 400
        assert response.json()["detail"] == "Referral program not found"

    def test_customer_without_code_gets_one(self, client, db, customer, admin, program):
        db["customers"].update_one({"_id": customer["_id"]}, {"$unset": {"referral_code": ""}})

        response = client.patch(
            f"/customers/{customer['_id']}",
            json={"referral_program_id": program["id"]},
            headers=auth_headers(admin),
        )
        code = response.json()["referral_code"]
        assert len(code) == 8
        assert code == code.upper()


class TestAdminCustomers:
    def test_list_and_get(self, client, customer, admin):
        headers = auth_headers(admin)
        emails = {c["email"] for c in client.get("/customers", headers=headers).json()}
        assert emails == {customer["email"], admin["email"]}

        data = client.get(f"/customers/{customer['_id']}", headers=headers).json()
        assert data["email"] == customer["email"]
        assert "password_hash" not in data

    def test_missing_customer(self, client, admin):
        response = client.get("/customers/not-an-id", headers=auth_headers(admin))
        assert response.status_code == 404

    @pytest.mark.parametrize("field", ["email", "is_admin"])
    def test_login_fields_cannot_be_nulled(self, client, db, customer, admin, field):
        response = client.patch(f"/customers/{customer['_id']}", json={field: None}, headers=auth_headers(admin))
        assert response.status_code == 422

        stored = db["customers"].find_one({"_id": customer["_id"]})
        assert stored["email"] == customer["email"]
        assert stored["is_admin"] is False

    def test_referral_program_can_be_cleared(self, client, db, customer, admin, program):
        headers = auth_headers(admin)
        client.patch(f"/customers/{customer['_id']}", json={"referral_program_id": program["id"]}, headers=headers)

        response = client.patch(f"/customers/{customer['_id']}", json={"referral_program_id": None}, headers=headers)
        assert response.status_code == 200
        assert db["customers"].find_one({"_id": customer["_id"]})["referral_program_id"] is None
