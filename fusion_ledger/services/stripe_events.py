from typing import Dict, Any, Tuple, Optional
import logging
from sqlalchemy import select
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError
from datetime import datetime, timedelta, timezone
import uuid

from fusion_ledger.models import CreditPackage, StripeEventLog, User
from fusion_ledger.services.credits import CreditLedger, LedgerStatus

logger = logging.getLogger(__name__)

MAX_PROCESSING_ATTEMPTS = 5
CREDIT_EVENTS = ("checkout.session.completed", "checkout.session.async_payment_succeeded")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StripeEventProcessor:
    """Process Stripe webhook events with guaranteed idempotency and transactional safety.

    Two layers protect against at-least-once delivery: the event log is unique
    on the Stripe event id, and the ledger is unique on (user, payment
    reference), so the same checkout session reported by two different events
    is still credited once.
    """

    def __init__(self, db: Session):
        self.db = db
        self.ledger = CreditLedger(db, autocommit=False)

    async def process_event(self, event_data: Dict[str, Any]) -> Tuple[bool, str]:
        """
        Process Stripe webhook event with atomic insert-first idempotency.

        Returns:
            (success, message)
        """
        event_id = event_data.get("id")
        event_type = event_data.get("type")

        if not event_id or not event_type:
            return False, "Invalid event data - missing id or type"

        # ATOMIC INSERT-FIRST APPROACH
        try:
            event_log = StripeEventLog(
                stripe_event_id=event_id,
                event_type=event_type,
                event_data=event_data,
                processed=False,
                processing_attempts=0,
            )
            self.db.add(event_log)
            self.db.commit()
        except IntegrityError:
            # Event already exists - check if processed
            self.db.rollback()
            event_log = self.db.execute(
                select(StripeEventLog).where(StripeEventLog.stripe_event_id == event_id)
            ).scalar_one()

            if event_log.processed:
                logger.info(f"Event {event_id} already processed successfully")
                return True, "Event already processed"
            logger.info(f"Retrying failed event {event_id}")

        attempt = (event_log.processing_attempts or 0) + 1
        try:
            event_log.processing_attempts = attempt
            obj = event_data.get("data", {}).get("object") or {}

            if event_type in CREDIT_EVENTS:
                await self._handle_checkout_paid(obj)
            elif event_type == "checkout.session.async_payment_failed":
                await self._handle_payment_failed(obj)
            else:
                # Mark as processed even if unhandled to avoid retries
                logger.info(f"Unhandled event type: {event_type}")

            event_log.processed = True
            event_log.processed_at = _utcnow()
            event_log.error_message = None
            event_log.next_retry_at = None
            self.db.commit()

        except Exception as e:
            # Rollback any partial changes, ledger rows included
            self.db.rollback()

            event_log.processing_attempts = attempt
            event_log.error_message = str(e)
            backoff_seconds = min(60 * (2 ** (attempt - 1)), 3600)  # Max 1 hour
            event_log.next_retry_at = _utcnow() + timedelta(seconds=backoff_seconds)
            if attempt >= MAX_PROCESSING_ATTEMPTS:
                event_log.dead_letter = True
                logger.error(f"Event {event_id} marked as dead letter after {attempt} attempts")
            self.db.commit()

            logger.error(f"Failed to process event {event_id}: {e}")

            if attempt >= MAX_PROCESSING_ATTEMPTS:
                return False, f"Event processing failed after {MAX_PROCESSING_ATTEMPTS} attempts: {str(e)}"

            return False, f"Event processing failed: {str(e)}"

        logger.info(f"Successfully processed Stripe event {event_id} ({event_type})")
        return True, "Event processed successfully"

    def _resolve_user(self, session_data: Dict[str, Any]) -> User:
        """Find who paid: client reference, then metadata ids, then the checkout email."""
        metadata = session_data.get("metadata") or {}
        email = (session_data.get("customer_details") or {}).get("email")

        reference = (
            session_data.get("client_reference_id")
            or metadata.get("user_id")
            or metadata.get("external_user_id")
        )
        if reference:
            user = self._internal_user(reference)
            if user is not None:
                return user
            return self.ledger.get_or_create_user(reference, email=email)

        if email:
            matches = self.db.execute(select(User).where(User.email == email).limit(2)).scalars().all()
            if len(matches) == 1:
                logger.info(f"Matched checkout {session_data.get('id')} to user {matches[0].id} by email")
                return matches[0]
            if matches:
                raise ValueError(f"Checkout email {email} matches more than one user: {session_data.get('id')}")

        raise ValueError(f"Missing user reference in checkout session: {session_data.get('id')}")

    def _internal_user(self, reference: str) -> Optional[User]:
        # Checkouts created by this service may carry the internal id instead of the provider id
        try:
            user_id = uuid.UUID(reference)
        except ValueError:
            return None
        return self.db.get(User, user_id)

    def _resolve_credits(self, session_data: Dict[str, Any]) -> int:
        metadata = session_data.get("metadata") or {}
        if metadata.get("credits"):
            return int(metadata["credits"])
        package_id = metadata.get("package_id")
        if package_id:
            package = self.db.get(CreditPackage, package_id)
            if package is None:
                raise ValueError(f"Unknown credit package '{package_id}'")
            return package.credits
        raise ValueError(f"Missing credits in checkout session: {session_data.get('id')}")

    async def _handle_checkout_paid(self, session_data: Dict[str, Any]):
        """Credit a paid one-off checkout session."""
        session_id = session_data.get("id")
        if not session_id:
            raise ValueError("Checkout session without id")

        if session_data.get("mode", "payment") != "payment":
            logger.info(f"Checkout session {session_id} is not a one-off payment, skipping")
            return
        if session_data.get("payment_status", "paid") != "paid":
            logger.info(f"Checkout session {session_id} not paid yet ({session_data.get('payment_status')}), skipping")
            return

        credits = self._resolve_credits(session_data)
        user = self._resolve_user(session_data)

        result = self.ledger.purchase(
            user_id=user.id,
            credits=credits,
            payment_reference=session_id,
            description=f"Purchase of {credits} credits",
        )
        if result.status is LedgerStatus.DUPLICATE:
            logger.info(f"Checkout {session_id} was already credited to user {user.id}")
        else:
            logger.info(f"Added {credits} credits to user {user.id} from checkout {session_id}")

    async def _handle_payment_failed(self, session_data: Dict[str, Any]):
        """Asynchronous payment methods can fail after the checkout completed."""
        logger.warning(f"Payment failed for checkout session {session_data.get('id')}; no credits granted")
