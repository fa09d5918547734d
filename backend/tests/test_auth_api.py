import pytest

import auth

PASSWORD = "TestPass123!"


def _registration(**overrides):
    body = {
        "username": "new_waiter",
        "email": "New.Waiter@Example.com",
        "password": "Str0ng!pass",
        "role": "waiter",
        "profile": {"first_name": "New", "last_name": "Waiter", "phone": "+91 98765 43210"},
        "restaurant_id": "rest-1",
    }
    body.update(overrides)
    return body


# ========== login ==========

def test_login_returns_tokens(client, make_user):
    user = make_user("waiter")
    response = client.post("/auth/login", json={"email": user.email, "password": PASSWORD})
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["token_type"] == "bearer"
    assert data["expires_in"] == auth.ACCESS_TOKEN_EXPIRE_MINUTES * 60
    assert data["user"]["email"] == user.email
    assert auth.verify_token(data["access_token"])["id"] == user.id
    assert auth.verify_token(data["refresh_token"], auth.REFRESH)["id"] == user.id


def test_login_records_last_login(client, db, make_user):
    user = make_user("waiter")
    assert user.last_login is None
    client.post("/auth/login", json={"email": user.email, "password": PASSWORD})
    db.refresh(user)
    assert user.last_login is not None


def test_login_with_wrong_password(client, make_user):
    user = make_user("waiter")
    response = client.post("/auth/login", json={"email": user.email, "password": "WrongPass1!"})
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "INVALID_CREDENTIALS"


def test_login_with_unknown_email(client):
    response = client.post("/auth/login", json={"email": "ghost@example.com", "password": PASSWORD})
    assert response.json()["error"]["code"] == "INVALID_CREDENTIALS"


def test_inactive_user_cannot_log_in(client, make_user):
    user = make_user("waiter", is_active=False)
    response = client.post("/auth/login", json={"email": user.email, "password": PASSWORD})
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "INVALID_CREDENTIALS"


def test_login_validates_email(client):
    response = client.post("/auth/login", json={"email": "not-an-email", "password": PASSWORD})
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


# ========== registration ==========

def test_admin_registers_user(client, make_user, headers_for):
    admin = make_user("admin")
    response = client.post("/auth/register", json=_registration(role="manager", restaurant_id="rest-7"),
                           headers=headers_for(admin))
    assert response.status_code == 201
    user = response.json()["data"]["user"]
    assert user["email"] == "new.waiter@example.com"
    assert user["role"] == "manager"
    assert user["restaurant_id"] == "rest-7"


def test_manager_registers_into_own_restaurant(client, make_user, headers_for):
    manager = make_user("manager", restaurant_id="rest-1")
    response = client.post("/auth/register", json=_registration(restaurant_id="rest-2"),
                           headers=headers_for(manager))
    assert response.status_code == 201
    assert response.json()["data"]["user"]["restaurant_id"] == "rest-1"


def test_manager_cannot_create_admin(client, make_user, headers_for):
    manager = make_user("manager")
    response = client.post("/auth/register", json=_registration(role="admin"), headers=headers_for(manager))
    assert response.status_code == 403
    assert response.json()["error"]["code"] == "INSUFFICIENT_ROLE_LEVEL"


def test_waiter_cannot_register_users(client, make_user, headers_for):
    response = client.post("/auth/register", json=_registration(), headers=headers_for(make_user("waiter")))
    assert response.status_code == 403


def test_registration_requires_restaurant_for_staff(client, make_user, headers_for):
    admin = make_user("admin")
    response = client.post("/auth/register", json=_registration(restaurant_id=None), headers=headers_for(admin))
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


def test_duplicate_registration(client, make_user, headers_for):
    admin = make_user("admin")
    assert client.post("/auth/register", json=_registration(), headers=headers_for(admin)).status_code == 201
    response = client.post("/auth/register", json=_registration(email="other@example.com"),
                           headers=headers_for(admin))
    assert response.status_code == 409
    assert response.json()["error"]["code"] == "USER_EXISTS"


@pytest.mark.parametrize("overrides,field", [
    ({"username": "ab"}, "username"),
    ({"username": "bad name!"}, "username"),
    ({"password": "weakpassword"}, "password"),
    ({"role": "owner"}, "role"),
    ({"email": "nope"}, "email"),
])
def test_registration_validation(client, make_user, headers_for, overrides, field):
    response = client.post("/auth/register", json=_registration(**overrides),
                           headers=headers_for(make_user("admin")))
    assert response.status_code == 400
    assert field in [d["field"] for d in response.json()["error"]["details"]]


# ========== tokens ==========

def test_refresh_issues_new_tokens(client, make_user):
    user = make_user("waiter")
    response = client.post("/auth/refresh", json={"refresh_token": auth.create_refresh_token(user)})
    assert response.status_code == 200
    assert auth.verify_token(response.json()["data"]["access_token"])["id"] == user.id


def test_refresh_rejects_access_token(client, make_user):
    user = make_user("waiter")
    response = client.post("/auth/refresh", json={"refresh_token": auth.create_access_token(user)})
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "INVALID_TOKEN"


def test_refresh_rejects_inactive_user(client, make_user):
    user = make_user("waiter", is_active=False)
    response = client.post("/auth/refresh", json={"refresh_token": auth.create_refresh_token(user)})
    assert response.status_code == 401


def test_logout(client, make_user, headers_for):
    response = client.post("/auth/logout", headers=headers_for(make_user("waiter")))
    assert response.status_code == 200
    assert response.json()["success"] is True


def test_permissions_endpoint_merges_extra_grants(client, make_user, headers_for):
    kitchen = make_user("kitchen", permissions=["reports:view"])
    data = client.get("/auth/permissions", headers=headers_for(kitchen)).json()["data"]
    assert data["role"] == "kitchen"
    assert "order:update:status" in data["permissions"]
    assert data["permissions"][-1] == "reports:view"


def test_change_password(client, make_user, headers_for):
    user = make_user("waiter")
    response = client.put("/auth/change-password", json={
        "current_password": PASSWORD, "new_password": "N3w!Password",
    }, headers=headers_for(user))
    assert response.status_code == 200

    assert client.post("/auth/login", json={"email": user.email, "password": "N3w!Password"}).status_code == 200
    assert client.post("/auth/login", json={"email": user.email, "password": PASSWORD}).status_code == 401


def test_change_password_requires_current_password(client, make_user, headers_for):
    response = client.put("/auth/change-password", json={
        "current_password": "Wrong!pass1", "new_password": "N3w!Password",
    }, headers=headers_for(make_user("waiter")))
    assert response.status_code == 400


# ========== role checks ==========

@pytest.mark.parametrize("role,required,expected", [
    ("manager", "waiter", True),
    ("waiter", "manager", False),
    ("kitchen", "kitchen", True),
    ("admin", "customer", True),
    ("waiter", "superuser", False),
])
def test_validate_role(client, make_user, headers_for, role, required, expected):
    response = client.get(f"/auth/validate-role/{required}", headers=headers_for(make_user(role)))
    assert response.json()["data"]["hasRole"] is expected


@pytest.mark.parametrize("role,action,expected", [
    ("admin", "delete_user", True),
    ("manager", "export_customer_data", True),
    ("waiter", "delete_user", False),
    ("admin", "view_menu", False),
])
def test_require_additional_auth_endpoint(client, make_user, headers_for, role, action, expected):
    response = client.get(f"/auth/require-additional-auth/{action}", headers=headers_for(make_user(role)))
    assert response.json()["data"]["requiresAdditionalAuth"] is expected


# ========== step-up ==========

def _step_up(client, user, headers_for, operation="user:delete", password=PASSWORD):
    return client.post("/auth/step-up", json={"password": password, "operation": operation},
                       headers=headers_for(user))


def test_step_up_token_is_minted(client, make_user, headers_for):
    admin = make_user("admin")
    response = _step_up(client, admin, headers_for)
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["operation"] == "user:delete"
    assert data["expires_in"] == 300
    payload = auth.verify_token(data["token"], auth.STEP_UP)
    assert payload["user_id"] == admin.id


def test_step_up_requires_password(client, make_user, headers_for):
    response = _step_up(client, make_user("admin"), headers_for, password="Wrong!pass1")
    assert response.status_code == 403
    assert response.json()["error"]["code"] == "INVALID_ADDITIONAL_AUTH"


def test_step_up_only_for_sensitive_operations(client, make_user, headers_for):
    response = _step_up(client, make_user("admin"), headers_for, operation="order:create")
    assert response.status_code == 400


def test_delete_user_requires_step_up(client, make_user, headers_for):
    admin = make_user("admin")
    target = make_user("waiter")
    response = client.delete(f"/users/{target.id}", headers=headers_for(admin))
    assert response.status_code == 403
    assert response.json()["error"]["code"] == "ADDITIONAL_AUTH_REQUIRED"


def test_delete_user_with_step_up(client, db, make_user, headers_for):
    admin = make_user("admin")
    target = make_user("waiter")
    token = _step_up(client, admin, headers_for).json()["data"]["token"]

    response = client.delete(f"/users/{target.id}", headers={**headers_for(admin), "X-Additional-Auth": token})
    assert response.status_code == 200
    db.refresh(target)
    assert target.is_active is False


def test_delete_user_rejects_step_up_for_other_operation(client, make_user, headers_for):
    admin = make_user("admin")
    target = make_user("waiter")
    token = _step_up(client, admin, headers_for, operation="data:export").json()["data"]["token"]

    response = client.delete(f"/users/{target.id}", headers={**headers_for(admin), "X-Additional-Auth": token})
    assert response.status_code == 403
    assert response.json()["error"]["code"] == "INVALID_ADDITIONAL_AUTH"


def test_delete_user_rejects_step_up_of_another_admin(client, make_user, headers_for):
    admin = make_user("admin")
    other_admin = make_user("admin")
    target = make_user("waiter")
    token = _step_up(client, other_admin, headers_for).json()["data"]["token"]

    response = client.delete(f"/users/{target.id}", headers={**headers_for(admin), "X-Additional-Auth": token})
    assert response.json()["error"]["code"] == "INVALID_ADDITIONAL_AUTH"


def test_manager_cannot_delete_users_even_with_step_up(client, make_user, headers_for):
    manager = make_user("manager")
    target = make_user("waiter")
    token = _step_up(client, manager, headers_for).json()["data"]["token"]

    response = client.delete(f"/users/{target.id}", headers={**headers_for(manager), "X-Additional-Auth": token})
    assert response.status_code == 403
    assert response.json()["error"]["code"] == "INSUFFICIENT_PERMISSIONS"


# ========== activation ==========

def test_manager_deactivates_and_reactivates_staff(client, make_user, headers_for):
    manager = make_user("manager")
    waiter = make_user("waiter")

    response = client.put(f"/users/{waiter.id}/deactivate", headers=headers_for(manager))
    assert response.json()["data"]["user"]["is_active"] is False
    assert client.get("/auth/me", headers=headers_for(waiter)).json()["error"]["code"] == "USER_INACTIVE"

    response = client.put(f"/users/{waiter.id}/activate", headers=headers_for(manager))
    assert response.json()["data"]["user"]["is_active"] is True


def test_cannot_deactivate_self(client, make_user, headers_for):
    manager = make_user("manager")
    response = client.put(f"/users/{manager.id}/deactivate", headers=headers_for(manager))
    assert response.status_code == 400


def test_activate_unknown_user(client, make_user, headers_for):
    response = client.put("/users/9999/activate", headers=headers_for(make_user("admin")))
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "USER_NOT_FOUND"


def test_logout_revokes_token_when_redis_is_available(client, make_user, headers_for, monkeypatch):
    from redis_client import redis_client

    class Revocations:
        def __init__(self):
            self.keys = {}

        def ping(self):
            return True

        def setex(self, key, ttl, value):
            self.keys[key] = value

        def exists(self, key):
            return int(key in self.keys)

        def incr(self, key):
            return 1

        def expire(self, key, window):
            pass

    monkeypatch.setattr(redis_client, "client", Revocations())
    headers = headers_for(make_user("waiter"))

    assert client.post("/auth/logout", headers=headers).status_code == 200
    response = client.get("/auth/me", headers=headers)
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "INVALID_TOKEN"
