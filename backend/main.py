from fastapi import FastAPI, Depends, Header, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from datetime import datetime
from typing import Optional
import logging
import os
import uvicorn

import auth_service
import models
import order_service
from authorization import (
    authorize,
    bearer_token,
    get_current_user,
    require_any_permission,
    require_ownership,
    require_permission,
    require_step_up,
    restaurant_scope,
)
from database import get_db, init_db, wait_for_db
from errors import ApiError, error_body, new_request_id, success_body
from permissions import ADMIN, KITCHEN, MANAGER, WAITER, get_user_permissions
from redis_client import rate_limit, redis_client
from schemas import (
    ChangePasswordRequest,
    LoginRequest,
    OrderCreate,
    OrderResponse,
    OrderUpdate,
    RefreshRequest,
    RegisterRequest,
    StatusUpdate,
    StepUpRequest,
    UserResponse,
)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger("restaurant_pos")

LOGIN_RATE_LIMIT = int(os.getenv("LOGIN_RATE_LIMIT", "10"))
LOGIN_RATE_WINDOW = int(os.getenv("LOGIN_RATE_WINDOW", "60"))

app = FastAPI(title="Restaurant POS API")


origins = os.getenv(
    "CORS_ORIGINS",
    "http://localhost,http://localhost:3000,http://127.0.0.1:3000,http://localhost:8080",
).split(",")

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def startup_event():
    if wait_for_db():
        logger.info("Creating database tables...")
        init_db()
    else:
        logger.error("Database did not become ready during startup")

    if redis_client.is_available():
        logger.info("Redis available")
    else:
        logger.warning("Redis unavailable: order numbers use the database sequence, logout cannot revoke tokens")


@app.middleware("http")
async def assign_request_id(request: Request, call_next):
    request.state.request_id = request.headers.get("X-Request-ID") or new_request_id()
    response = await call_next(request)
    response.headers["X-Request-ID"] = request.state.request_id
    return response


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or new_request_id()


@app.exception_handler(ApiError)
async def api_error_handler(request: Request, exc: ApiError):
    return JSONResponse(
        status_code=exc.status_code,
        content=jsonable_encoder(error_body(exc.code, exc.message, _request_id(request), exc.details)),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    details = [
        {
            "field": ".".join(str(part) for part in err["loc"] if part not in ("body", "query", "path")),
            "message": err["msg"],
        }
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content=jsonable_encoder(error_body("VALIDATION_ERROR", "Request validation failed",
                                            _request_id(request), details)),
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=jsonable_encoder(error_body("INTERNAL_ERROR", "Internal server error", _request_id(request))),
    )


def order_data(order: models.Order):
    return OrderResponse.model_validate(order)


@app.get("/health")
def health_check():
    return {"status": "ok", "message": "API is running", "redis_available": redis_client.is_available()}


# ========== auth ==========

@app.post("/auth/login")
def login(credentials: LoginRequest, db: Session = Depends(get_db),
          _remaining: int = Depends(rate_limit(LOGIN_RATE_LIMIT, LOGIN_RATE_WINDOW, "login"))):
    return success_body(auth_service.login(db, credentials.email, credentials.password))


@app.post("/auth/register", status_code=201)
def register(user: RegisterRequest, db: Session = Depends(get_db),
             current_user: models.User = Depends(authorize(ADMIN, MANAGER))):
    return success_body(auth_service.register(db, user, actor=current_user))


@app.post("/auth/refresh")
def refresh(body: RefreshRequest, db: Session = Depends(get_db)):
    return success_body(auth_service.refresh(db, body.refresh_token))


@app.post("/auth/logout")
def logout(authorization: Optional[str] = Header(None),
           current_user: models.User = Depends(get_current_user)):
    auth_service.logout(bearer_token(authorization))
    return success_body({"message": "Logged out successfully"})


@app.get("/auth/me")
def get_current_user_info(current_user: models.User = Depends(get_current_user)):
    return success_body({"user": UserResponse.model_validate(current_user)})


@app.get("/auth/permissions")
def get_permissions(current_user: models.User = Depends(get_current_user)):
    return success_body({
        "role": current_user.role,
        "permissions": get_user_permissions(current_user.role, current_user.permissions),
    })


@app.put("/auth/change-password")
def change_password(password_data: ChangePasswordRequest, db: Session = Depends(get_db),
                    current_user: models.User = Depends(get_current_user)):
    auth_service.change_password(db, current_user, password_data.current_password, password_data.new_password)
    return success_body({"message": "Password changed successfully"})


@app.post("/auth/step-up")
def step_up_token(body: StepUpRequest, current_user: models.User = Depends(get_current_user)):
    return success_body(auth_service.issue_step_up(current_user, body.password, body.operation))


@app.get("/auth/validate-role/{role}")
def validate_role(role: str, authorization: Optional[str] = Header(None),
                  current_user: models.User = Depends(get_current_user)):
    has_role = auth_service.validate_role(bearer_token(authorization), role)
    return success_body({"hasRole": has_role})


@app.get("/auth/require-additional-auth/{action}")
def require_additional_auth(action: str, db: Session = Depends(get_db),
                            current_user: models.User = Depends(get_current_user)):
    requires = auth_service.require_additional_auth(db, current_user.id, action)
    return success_body({"requiresAdditionalAuth": requires})


# ========== users ==========

@app.get("/users/{user_id}")
def get_user(user_id: int, db: Session = Depends(get_db),
             current_user: models.User = Depends(require_ownership("user_id"))):
    return success_body({"user": UserResponse.model_validate(auth_service.get_user(db, user_id, current_user))})


@app.put("/users/{user_id}/activate")
def activate_user(user_id: int, db: Session = Depends(get_db),
                  current_user: models.User = Depends(authorize(ADMIN, MANAGER))):
    user = auth_service.set_active(db, user_id, True, current_user)
    return success_body({"message": "User activated successfully", "user": UserResponse.model_validate(user)})


@app.put("/users/{user_id}/deactivate")
def deactivate_user(user_id: int, db: Session = Depends(get_db),
                    current_user: models.User = Depends(authorize(ADMIN, MANAGER))):
    user = auth_service.set_active(db, user_id, False, current_user)
    return success_body({"message": "User deactivated successfully", "user": UserResponse.model_validate(user)})


@app.delete("/users/{user_id}")
def delete_user(user_id: int, db: Session = Depends(get_db),
                current_user: models.User = Depends(authorize(ADMIN)),
                _confirmed: models.User = Depends(require_step_up("user:delete"))):
    # accounts are deactivated, never removed
    user = auth_service.set_active(db, user_id, False, current_user)
    return success_body({"message": f"User {user.username} deleted successfully."})


# ========== orders ==========

@app.post("/orders", status_code=201)
def create_order(order: OrderCreate, db: Session = Depends(get_db),
                 current_user: models.User = Depends(require_permission("order:create"))):
    return success_body(order_data(order_service.create_order(db, order, current_user)))


def _list(db: Session, current_user: models.User, filters: dict, page: int, limit: int, sort: str, order: str):
    orders, pagination = order_service.list_orders(db, current_user, filters, page, limit, sort, order)
    return success_body([order_data(o) for o in orders], pagination)


@app.get("/orders")
def get_orders(
    status: Optional[str] = None,
    payment_status: Optional[str] = None,
    customer_id: Optional[int] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    sort: str = "created_at",
    order: str = Query("desc", pattern="^(asc|desc)$"),
    scope: Optional[str] = Depends(restaurant_scope),
    db: Session = Depends(get_db),
    current_user: models.User = Depends(require_any_permission("order:view", "order:view:own")),
):
    filters = {
        "restaurant_id": scope,
        "status": status,
        "payment_status": payment_status,
        "customer_id": customer_id,
        "start_date": start_date,
        "end_date": end_date,
    }
    return _list(db, current_user, filters, page, limit, sort, order)


@app.get("/orders/status/{status}")
def get_orders_by_status(
    status: str,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    scope: Optional[str] = Depends(restaurant_scope),
    db: Session = Depends(get_db),
    current_user: models.User = Depends(require_any_permission("order:view", "order:view:own")),
):
    return _list(db, current_user, {"restaurant_id": scope, "status": status}, page, limit, "created_at", "desc")


@app.get("/orders/{order_id}")
def get_order(order_id: int, db: Session = Depends(get_db),
              current_user: models.User = Depends(require_any_permission("order:view", "order:view:own"))):
    return success_body(order_data(order_service.get_order(db, order_id, current_user)))


@app.put("/orders/{order_id}")
def update_order(order_id: int, order_update: OrderUpdate, db: Session = Depends(get_db),
                 current_user: models.User = Depends(require_permission("order:update"))):
    patch = order_update.model_dump(mode="json", exclude_unset=True)
    return success_body(order_data(order_service.update_order(db, order_id, patch, current_user)))


@app.patch("/orders/{order_id}/status")
def update_order_status(order_id: int, body: StatusUpdate, db: Session = Depends(get_db),
                        current_user: models.User = Depends(authorize(ADMIN, MANAGER, WAITER, KITCHEN))):
    return success_body(order_data(order_service.update_order_status(db, order_id, body.status, current_user)))


@app.delete("/orders/{order_id}")
def delete_order(order_id: int, db: Session = Depends(get_db),
                 current_user: models.User = Depends(authorize(ADMIN, MANAGER))):
    order_service.delete_order(db, order_id, current_user)
    return success_body({})


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
