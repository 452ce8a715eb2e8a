"""Connected payout account onboarding and readiness"""
import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from app.core.config import settings, CONNECT_REFRESH_PATH, CONNECT_RETURN_PATH
from app.core.errors import PayoutAccountInvalid, PayoutSetupRequired
from app.models.payout_account import PayoutAccount
from app.models.user import User
from app.services.payout_service import (
    AccountReadiness, PayoutConnector, get_payout_connector, readiness_from_account
)

logger = logging.getLogger(__name__)
payout_logger = logging.getLogger("payout")


def get_payout_account(user_id: int, db: Session) -> Optional[PayoutAccount]:
    return db.query(PayoutAccount).filter(PayoutAccount.user_id == user_id).first()


def apply_readiness(account: PayoutAccount, readiness: AccountReadiness) -> bool:
    """Copy fresh flags onto the stored account; returns True if anything changed"""
    changed = False
    for field in ("onboarding_completed", "charges_enabled", "payouts_enabled", "transfers_active"):
        value = getattr(readiness, field)
        if getattr(account, field) != value:
            setattr(account, field, value)
            changed = True
    return changed


def _onboarding_urls(origin: Optional[str]):
    base = (origin or settings.FRONTEND_URL).rstrip("/")
    return f"{base}{CONNECT_REFRESH_PATH}", f"{base}{CONNECT_RETURN_PATH}"


def start_onboarding(
    user_id: int,
    db: Session,
    connector: Optional[PayoutConnector] = None,
    origin: Optional[str] = None
) -> Dict[str, Any]:
    """Create (or reuse) the user's connected account and return an onboarding link"""
    connector = connector or get_payout_connector()
    account = get_payout_account(user_id, db)

    if account and account.is_ready:
        return {
            "success": True,
            "alreadyOnboarded": True,
            "message": "Bank account already connected",
        }

    if not account:
        user = db.query(User).filter(User.id == user_id).first()
        stripe_account_id = connector.create_account(user_id, user.email if user else None)
        account = PayoutAccount(user_id=user_id, stripe_account_id=stripe_account_id)
        db.add(account)
        db.commit()
        db.refresh(account)
        payout_logger.info(f"Created connected account {stripe_account_id} for user {user_id}")

    refresh_url, return_url = _onboarding_urls(origin)
    url = connector.create_onboarding_link(account.stripe_account_id, refresh_url, return_url)
    return {"success": True, "url": url, "accountId": account.stripe_account_id}


def refresh_onboarding(
    user_id: int,
    db: Session,
    connector: Optional[PayoutConnector] = None,
    origin: Optional[str] = None
) -> Dict[str, Any]:
    """Fresh onboarding link (links expire); none needed once fully verified"""
    connector = connector or get_payout_connector()
    account = get_payout_account(user_id, db)
    if not account:
        raise PayoutSetupRequired("No connected account found. Please start onboarding first.", action="onboard")

    if account.onboarding_completed:
        try:
            readiness = connector.check_readiness(account.stripe_account_id)
        except PayoutAccountInvalid:
            readiness = None
        if readiness is not None:
            if apply_readiness(account, readiness):
                db.commit()
            if readiness.is_ready:
                return {
                    "success": True,
                    "alreadyOnboarded": True,
                    "message": "Account is fully verified. No onboarding needed.",
                }

    refresh_url, return_url = _onboarding_urls(origin)
    url = connector.create_onboarding_link(account.stripe_account_id, refresh_url, return_url)
    return {
        "success": True,
        "url": url,
        "accountId": account.stripe_account_id,
        "message": "New onboarding link generated",
    }


def get_connect_status(
    user_id: int,
    db: Session,
    connector: Optional[PayoutConnector] = None
) -> Dict[str, Any]:
    """Readiness as the UI needs it to choose between onboarding and redemption"""
    connector = connector or get_payout_connector()
    account = get_payout_account(user_id, db)
    if not account:
        return {
            "connected": False,
            "onboardingCompleted": False,
            "canReceivePayouts": False,
            "message": "No connected account found",
        }

    try:
        readiness = connector.check_readiness(account.stripe_account_id)
    except PayoutAccountInvalid:
        return {
            "connected": False,
            "onboardingCompleted": False,
            "canReceivePayouts": False,
            "error": "Account not found or invalid",
        }
    if apply_readiness(account, readiness):
        db.commit()

    return {
        "connected": True,
        "onboardingCompleted": readiness.is_ready,
        "canReceivePayouts": readiness.is_ready,
        "accountId": account.stripe_account_id,
        "details": {
            "chargesEnabled": readiness.charges_enabled,
            "payoutsEnabled": readiness.payouts_enabled,
            "transfersActive": readiness.transfers_active,
            "detailsSubmitted": readiness.onboarding_completed,
            "requiresOnboarding": not readiness.is_ready,
        },
    }


def handle_account_updated(account_obj: Any, db: Session) -> Optional[PayoutAccount]:
    """Webhook: refresh stored flags from an ``account.updated`` payload"""
    readiness = readiness_from_account(account_obj)
    account = db.query(PayoutAccount).filter(
        PayoutAccount.stripe_account_id == readiness.account_id
    ).first()
    if not account:
        logger.info(f"account.updated for unknown account {readiness.account_id}, skipping")
        return None

    if apply_readiness(account, readiness):
        db.commit()
        payout_logger.info(
            f"Payout account {account.stripe_account_id} for user {account.user_id} "
            f"is {'active' if readiness.is_ready else 'pending'}"
        )
    return account
