"""
Receipt delivery for reconciled pledges.

Receipts are recorded as PledgeReceipt intents in the same transaction as
the status transition. ReceiptService delivers an intent at most once:
it claims the row with a conditional update (pending/failed -> sending)
before calling the sender, so overlapping or retried sweeps cannot send
the same receipt twice. A SENDING claim expires after
RECEIPT_SENDING_LEASE_SECONDS so a crashed worker does not strand it.

The sender is a collaborator behind the ReceiptSender protocol. The
default EmailReceiptSender renders Django templates and sends through
Django's mail framework.

Usage:
    from pledges.services.receipt_service import ReceiptService

    sent = ReceiptService.send(receipt)   # False if not claimable
    ReceiptService.resend_failed(limit=100)
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from django.conf import settings
from django.core.mail import EmailMultiAlternatives
from django.db.models import F, Q
from django.template.loader import render_to_string
from django.utils import timezone

from core.services import BaseService

from pledges.exceptions import ReceiptSendFailed
from pledges.models import PledgeReceipt
from pledges.state_machines import ReceiptStatus

if TYPE_CHECKING:
    from pledges.models import Pledge


# =============================================================================
# Data Types
# =============================================================================


@dataclass(frozen=True)
class ReceiptPayload:
    """Everything a receipt or notice needs, detached from the ORM."""

    payer_email: str
    payer_name: str
    amount: Decimal
    kind: str
    pledge_id: str
    occurred_at: datetime
    mode: str
    currency: str = "usd"


@runtime_checkable
class ReceiptSender(Protocol):
    """
    Interface of the receipt collaborator.

    Implementations raise on failure; ReceiptService records the failure
    and never retries synchronously.
    """

    def send_receipt(self, payload: ReceiptPayload) -> None: ...

    def send_auto_cancel_notice(self, payload: ReceiptPayload) -> None: ...


class EmailReceiptSender:
    """Send receipts and notices as multipart email."""

    receipt_template = "pledges/emails/receipt"
    notice_template = "pledges/emails/auto_cancel_notice"

    def send_receipt(self, payload: ReceiptPayload) -> None:
        self._send(payload, "Thank you for your pledge", self.receipt_template)

    def send_auto_cancel_notice(self, payload: ReceiptPayload) -> None:
        self._send(payload, "Your pledge was not completed", self.notice_template)

    def _send(self, payload: ReceiptPayload, subject: str, template_name: str) -> None:
        context = {"payload": payload, "is_test": payload.mode == "test"}
        if payload.mode == "test":
            subject = f"[TEST] {subject}"

        email = EmailMultiAlternatives(
            subject=subject,
            body=render_to_string(f"{template_name}.txt", context),
            from_email=settings.DEFAULT_FROM_EMAIL,
            to=[payload.payer_email],
        )
        email.attach_alternative(
            render_to_string(f"{template_name}.html", context),
            "text/html",
        )
        email.send(fail_silently=False)


# =============================================================================
# Receipt Service
# =============================================================================


class ReceiptService(BaseService):
    """Deliver receipt intents exactly once."""

    # Sender - can be injected for testing
    _sender: ReceiptSender | None = None

    @classmethod
    def get_sender(cls) -> ReceiptSender:
        return cls._sender or EmailReceiptSender()

    @classmethod
    def set_sender(cls, sender: ReceiptSender | None) -> None:
        """Set the receipt sender (for testing)."""
        cls._sender = sender

    @staticmethod
    def build_payload(pledge: Pledge) -> ReceiptPayload | None:
        """
        Build the payload for a pledge, or None if there is no address.

        Email comes from the pledge, else its user. Name comes from the
        pledge, else the user's full name, else the local part of the email.
        """
        payer = pledge.payer
        email = pledge.payer_email or (payer.email if payer else "")
        if not email:
            return None

        name = pledge.payer_name
        if not name and payer is not None:
            name = payer.get_full_name()
        if not name:
            name = email.split("@", 1)[0]

        return ReceiptPayload(
            payer_email=email,
            payer_name=name,
            amount=pledge.amount_charged or pledge.amount,
            kind=pledge.kind,
            pledge_id=str(pledge.id),
            occurred_at=pledge.started_at or pledge.cancelled_at or timezone.now(),
            mode=pledge.processor_mode,
            currency=pledge.currency,
        )

    @staticmethod
    def claimable() -> Q:
        """
        Receipts a sender may take: PENDING, FAILED, or SENDING past its lease.

        A SENDING row whose lease ran out belongs to a worker that died
        between the claim and the final status write.
        """
        lease = timedelta(seconds=getattr(settings, "RECEIPT_SENDING_LEASE_SECONDS", 900))
        return Q(status__in=[ReceiptStatus.PENDING, ReceiptStatus.FAILED]) | Q(
            status=ReceiptStatus.SENDING,
            updated_at__lt=timezone.now() - lease,
        )

    @classmethod
    def claim(cls, receipt: PledgeReceipt) -> bool:
        """Move a receipt to SENDING if nobody else has. True if we own it."""
        claimed = PledgeReceipt.objects.filter(
            cls.claimable(),
            pk=receipt.pk,
        ).update(
            status=ReceiptStatus.SENDING,
            attempts=F("attempts") + 1,
            updated_at=timezone.now(),
        )
        return claimed == 1

    @classmethod
    def send(cls, receipt: PledgeReceipt) -> bool:
        """
        Deliver a receipt intent.

        Returns:
            True if this call delivered the receipt, False if there was
            nothing to do (no payer email, or already sent or in flight)

        Raises:
            ReceiptSendFailed: The sender failed; the intent is marked FAILED
        """
        logger = cls.get_logger()
        pledge = receipt.pledge
        payload = cls.build_payload(pledge)
        if payload is None:
            logger.warning(
                "No payer email for receipt, leaving intent pending",
                extra={"pledge_id": str(pledge.id), "receipt_id": str(receipt.pk)},
            )
            return False

        if not cls.claim(receipt):
            logger.info(
                "Receipt already sent or in flight",
                extra={"pledge_id": str(pledge.id), "receipt_id": str(receipt.pk)},
            )
            return False

        try:
            cls.get_sender().send_receipt(payload)
        except Exception as e:
            PledgeReceipt.objects.filter(pk=receipt.pk).update(
                status=ReceiptStatus.FAILED,
                last_error=str(e),
                updated_at=timezone.now(),
            )
            logger.warning(
                "Receipt send failed",
                extra={
                    "pledge_id": str(pledge.id),
                    "receipt_id": str(receipt.pk),
                    "error": str(e),
                },
            )
            raise ReceiptSendFailed(
                f"Receipt for pledge {pledge.id} failed: {e}",
                details={"pledge_id": str(pledge.id), "receipt_id": str(receipt.pk)},
            ) from e

        PledgeReceipt.objects.filter(pk=receipt.pk).update(
            status=ReceiptStatus.SENT,
            sent_at=timezone.now(),
            last_error="",
            updated_at=timezone.now(),
        )
        logger.info(
            "Receipt sent",
            extra={"pledge_id": str(pledge.id), "receipt_id": str(receipt.pk)},
        )
        return True

    @classmethod
    def notify_auto_cancel(cls, pledge: Pledge) -> bool:
        """
        Tell the payer their abandoned pledge was cancelled.

        Raises:
            ReceiptSendFailed: The sender failed
        """
        payload = cls.build_payload(pledge)
        if payload is None:
            return False
        try:
            cls.get_sender().send_auto_cancel_notice(payload)
        except Exception as e:
            cls.get_logger().warning(
                "Auto-cancel notice failed",
                extra={"pledge_id": str(pledge.id), "error": str(e)},
            )
            raise ReceiptSendFailed(
                f"Auto-cancel notice for pledge {pledge.id} failed: {e}",
                details={"pledge_id": str(pledge.id)},
            ) from e
        return True

    @classmethod
    def resend_failed(cls, limit: int = 100) -> dict[str, int]:
        """
        Retry receipt intents left FAILED or PENDING, and SENDING intents
        whose lease expired.

        Returns:
            Counts of sent, failed and skipped receipts
        """
        receipts = (
            PledgeReceipt.objects.filter(cls.claimable())
            .select_related("pledge", "pledge__payer")
            .order_by("created_at")[:limit]
        )

        counts = {"sent": 0, "failed": 0, "skipped": 0}
        for receipt in receipts:
            try:
                if cls.send(receipt):
                    counts["sent"] += 1
                else:
                    counts["skipped"] += 1
            except ReceiptSendFailed:
                counts["failed"] += 1

        cls.get_logger().info("Receipt resend finished", extra=counts)
        return counts
