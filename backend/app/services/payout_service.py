"""Payout connector - the only code that talks to the payout provider.

The orchestrator programs against ``PayoutConnector``; ``StripePayoutConnector``
maps its operations onto Stripe Connect accounts and transfers. Transfers are
never retried here: a new transfer needs a new fulfillment.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional

import stripe

from app.core.config import settings
from app.core.errors import PayoutAccountInvalid, TransferRejected, TransferOutcomeUnknown
from app.utils.stripe_objects import get_stripe_value, get_metadata

logger = logging.getLogger(__name__)
payout_logger = logging.getLogger("payout")

# Configure Stripe
stripe.api_key = settings.STRIPE_SECRET_KEY


@dataclass
class AccountReadiness:
    """Readiness flags of a connected payout account"""
    account_id: str
    onboarding_completed: bool
    charges_enabled: bool
    payouts_enabled: bool
    transfers_active: bool

    @property
    def is_ready(self) -> bool:
        return (
            self.onboarding_completed
            and self.charges_enabled
            and self.payouts_enabled
            and self.transfers_active
        )

    @property
    def action(self) -> str:
        """UI route for an account that is not ready"""
        return "onboard" if not self.onboarding_completed else "refresh_onboarding"


@dataclass
class TransferInfo:
    transfer_id: str
    amount_cents: int
    reversed: bool
    metadata: Dict[str, str]


class PayoutConnector(ABC):
    """Interface contract for payout providers"""

    @abstractmethod
    def check_readiness(self, account_id: str) -> AccountReadiness:
        """Fetch fresh readiness flags for a connected account.

        Raises:
            PayoutAccountInvalid: The account no longer resolves at the provider
        """

    @abstractmethod
    def initiate_transfer(
        self,
        account_id: str,
        amount_cents: int,
        metadata: Dict[str, str],
        idempotency_key: str,
        transfer_group: str,
        description: str = "",
    ) -> str:
        """Request a transfer and return the provider's transfer reference.

        The provider must treat ``idempotency_key`` as unique: a repeated call
        with the same key returns the original transfer instead of a new one.

        Raises:
            TransferRejected: The provider refused the transfer
            TransferOutcomeUnknown: No provider response was obtained
        """

    @abstractmethod
    def find_transfer(self, transfer_group: str) -> Optional[TransferInfo]:
        """Look up a transfer made under ``transfer_group`` (reconciliation)"""

    @abstractmethod
    def create_account(self, user_id: int, email: Optional[str] = None) -> str:
        """Create a connected account able to receive transfers; returns its id"""

    @abstractmethod
    def create_onboarding_link(self, account_id: str, refresh_url: str, return_url: str) -> str:
        """Return a hosted onboarding URL for the account"""


def readiness_from_account(account) -> AccountReadiness:
    """Build readiness flags from a Stripe Account object or webhook payload"""
    capabilities = get_stripe_value(account, 'capabilities', {}) or {}
    return AccountReadiness(
        account_id=get_stripe_value(account, 'id', ''),
        onboarding_completed=bool(get_stripe_value(account, 'details_submitted', False)),
        charges_enabled=bool(get_stripe_value(account, 'charges_enabled', False)),
        payouts_enabled=bool(get_stripe_value(account, 'payouts_enabled', False)),
        transfers_active=get_stripe_value(capabilities, 'transfers') == 'active',
    )


class StripePayoutConnector(PayoutConnector):
    """Stripe Connect (Express accounts + Transfers)"""

    def __init__(self, currency: str = None):
        self.currency = currency or settings.PAYOUT_CURRENCY

    def check_readiness(self, account_id: str) -> AccountReadiness:
        try:
            account = stripe.Account.retrieve(account_id)
        except (stripe.InvalidRequestError, stripe.PermissionError) as e:
            payout_logger.warning(f"Connected account {account_id} no longer resolves: {e}")
            raise PayoutAccountInvalid()
        readiness = readiness_from_account(account)
        readiness.account_id = account_id
        return readiness

    def initiate_transfer(
        self,
        account_id: str,
        amount_cents: int,
        metadata: Dict[str, str],
        idempotency_key: str,
        transfer_group: str,
        description: str = "",
    ) -> str:
        try:
            transfer = stripe.Transfer.create(
                amount=amount_cents,
                currency=self.currency,
                destination=account_id,
                transfer_group=transfer_group,
                metadata=metadata,
                description=description,
                idempotency_key=idempotency_key,
            )
        except stripe.APIConnectionError as e:
            payout_logger.error(f"No response from Stripe creating transfer {transfer_group}: {e}")
            raise TransferOutcomeUnknown()
        except stripe.IdempotencyError as e:
            # Another request with this key is still in flight; it may create the transfer
            payout_logger.warning(f"Transfer {transfer_group} already in flight: {e}")
            raise TransferOutcomeUnknown()
        except stripe.APIError as e:
            payout_logger.error(f"Stripe server error creating transfer {transfer_group}: {e}")
            raise TransferOutcomeUnknown()
        except stripe.StripeError as e:
            code = getattr(e, 'code', None) or 'stripe_transfer_failed'
            message = getattr(e, 'user_message', None) or str(e)
            payout_logger.error(f"Stripe rejected transfer {transfer_group}: [{code}] {message}")
            raise TransferRejected(code, message)

        transfer_id = get_stripe_value(transfer, 'id')
        payout_logger.info(f"Transfer created: {transfer_id} ({amount_cents} {self.currency}) -> {account_id}")
        return transfer_id

    def find_transfer(self, transfer_group: str) -> Optional[TransferInfo]:
        transfers = stripe.Transfer.list(transfer_group=transfer_group, limit=1)
        data = get_stripe_value(transfers, 'data', []) or []
        if not data:
            return None
        transfer = data[0]
        return TransferInfo(
            transfer_id=get_stripe_value(transfer, 'id'),
            amount_cents=get_stripe_value(transfer, 'amount', 0),
            reversed=bool(get_stripe_value(transfer, 'reversed', False)),
            metadata=get_metadata(transfer),
        )

    def create_account(self, user_id: int, email: Optional[str] = None) -> str:
        params = {
            "type": "express",
            "capabilities": {"transfers": {"requested": True}},
            "business_type": "individual",
            "metadata": {"user_id": str(user_id)},
        }
        if email:
            params["email"] = email
        account = stripe.Account.create(**params)
        return get_stripe_value(account, 'id')

    def create_onboarding_link(self, account_id: str, refresh_url: str, return_url: str) -> str:
        link = stripe.AccountLink.create(
            account=account_id,
            refresh_url=refresh_url,
            return_url=return_url,
            type="account_onboarding",
            collection_options={"fields": "eventually_due", "future_requirements": "omit"},
        )
        return get_stripe_value(link, 'url')


_connector: Optional[PayoutConnector] = None


def get_payout_connector() -> PayoutConnector:
    """FastAPI dependency returning the configured connector"""
    global _connector
    if _connector is None:
        _connector = StripePayoutConnector()
    return _connector
