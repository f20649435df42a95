import logging
from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy.orm import Session

from fintrack.core.auth_dependency import get_db, get_current_user_obj
from fintrack.core.security import hash_password, verify_password, create_access_token
from fintrack.db.models.user import User
from fintrack.schemas.auth import SignupRequest, SignupResponse, DeleteAccountRequest
from fintrack.services.account_service import AccountDeletionError, delete_account
from fintrack.services.subscription_service import SubscriptionAlreadyExistsError, create_trial_subscription

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/auth", tags=["Auth"])


# ✅ USER SIGNUP (starts the free trial)
@router.post("/signup", status_code=status.HTTP_201_CREATED, response_model=SignupResponse)
def signup(payload: SignupRequest, db: Session = Depends(get_db)):
    email = payload.email.lower()

    existing_user = db.query(User).filter(User.email == email).first()
    if existing_user:
        raise HTTPException(status_code=400, detail="Email already registered")

    user = User(
        full_name=payload.full_name,
        email=email,
        password_hash=hash_password(payload.password),
    )

    db.add(user)
    db.commit()
    db.refresh(user)

    try:
        subscription = create_trial_subscription(db, user.id)
    except SubscriptionAlreadyExistsError:
        raise HTTPException(status_code=409, detail="Subscription already exists")
    logger.info(f"User signed up: user_id={user.id}")

    return {
        "message": "User created successfully",
        "user_id": user.id,
        "trial_ends_at": subscription.trial_ends_at.isoformat(),
    }


# ✅ OAUTH2 LOGIN (Swagger sends "username", treated as email)
@router.post("/login")
def login(
    form_data: OAuth2PasswordRequestForm = Depends(),
    db: Session = Depends(get_db)
):
    user = db.query(User).filter(
        User.email == form_data.username.lower(),
        User.deleted_at.is_(None),
    ).first()

    if not user or not verify_password(form_data.password, user.password_hash):
        raise HTTPException(status_code=401, detail="Invalid credentials")

    token = create_access_token({"sub": user.email})

    return {
        "access_token": token,
        "token_type": "bearer"
    }


# ✅ ACCOUNT DELETION (anonymize, then best-effort remote cancel)
@router.delete("/account")
def delete_my_account(
    payload: DeleteAccountRequest,
    user: User = Depends(get_current_user_obj),
    db: Session = Depends(get_db),
):
    try:
        delete_account(db, user, payload.confirmEmail)
    except AccountDeletionError as e:
        raise HTTPException(
            status_code=422,
            detail={"confirmEmail": [str(e)]},
        )

    return {"message": "Account deleted successfully"}
