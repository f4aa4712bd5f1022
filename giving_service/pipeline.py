"""
Charge flow: validate, authorize with TapPay, hand settlement to the queue
"""
import logging
from dataclasses import dataclass
from datetime import date as Date, datetime
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from common.error_handling import EnqueueFailed, ValidationError
from common.job_queue import JobHandle, JobQueue
from common.schemas import ChargeRequest, DonationRecord, JobPayload
from .gateway import GatewayResult, TapPayClient
from .notifications import NotificationDispatcher, build_context

logger = logging.getLogger(__name__)

def settlement_job_id(tp_trade_id: str) -> str:
    """Job id derived from the gateway transaction, so one charge maps to one job"""
    return f"giving-{tp_trade_id}"

def local_today(timezone: str) -> Date:
    return datetime.now(ZoneInfo(timezone)).date()

@dataclass
class ChargeOutcome:
    result: GatewayResult
    record: Optional[DonationRecord] = None
    job: Optional[JobHandle] = None

class GivingPipeline:
    def __init__(self, gateway: TapPayClient, queue: JobQueue, dispatcher: NotificationDispatcher,
                 currency: str = "TWD", timezone: str = "Asia/Taipei",
                 today: Callable[[], Date] = None):
        self.gateway = gateway
        self.queue = queue
        self.dispatcher = dispatcher
        self.currency = currency
        self.timezone = timezone
        self.today = today or (lambda: local_today(self.timezone))

    @staticmethod
    def validate(request: ChargeRequest) -> None:
        if not request.prime or not request.amount or request.cardholder is None:
            raise ValidationError("Missing required fields: prime, amount, or cardholder")
        if not request.cardholder.phoneCode or not request.cardholder.phone_number:
            raise ValidationError("Missing required fields: phoneCode, or phone_number")
        if request.amount < 0:
            raise ValidationError("amount must be positive")

    def build_record(self, request: ChargeRequest) -> DonationRecord:
        cardholder = request.cardholder
        return DonationRecord(
            name=cardholder.name,
            amount=request.amount,
            currency=self.currency,
            date=self.today(),
            phone_number=cardholder.phoneCode + cardholder.phone_number,
            email=cardholder.email or "",
            receipt=cardholder.receipt or False,
            payment_type=cardholder.paymentType or "",
            upload=cardholder.upload or False,
            receipt_name=cardholder.receiptName or "",
            nationalid=cardholder.nationalid or "",
            company=cardholder.company or "",
            taxid=cardholder.taxid or "",
            note=cardholder.note or "",
            campus=cardholder.campus or "",
            is_success=False,
            env=self.gateway.env,
        )

    def charge(self, request: ChargeRequest) -> ChargeOutcome:
        """Authorize the charge; on success queue its settlement and send the receipt email.

        Persistence and email happen after this returns. A decline is a normal
        outcome with nothing queued.
        """
        self.validate(request)
        record = self.build_record(request)

        result = self.gateway.charge(record.phone_number, request.prime, request.amount, request.cardholder)
        if not result.is_success:
            logger.info("giving without success")
            return ChargeOutcome(result=result)

        if not result.rec_trade_id:
            raise EnqueueFailed(
                "Gateway reported success without a transaction id",
                context={"result": result.raw()},
            )

        record = record.model_copy(update={"tp_trade_id": result.rec_trade_id, "is_success": True})
        payload = JobPayload(givingData=record).model_dump(mode="json", by_alias=True)
        try:
            job = self.queue.enqueue(settlement_job_id(result.rec_trade_id), payload)
        except EnqueueFailed as e:
            e.message = "Failed to add payment to processing queue."
            e.context["result"] = result.raw()
            raise

        if request.cardholder.email:
            self.dispatcher.notify_success(
                request.cardholder.email,
                build_context(
                    request.cardholder.receiptName,
                    request.amount,
                    self.currency,
                    record.date,
                    request.cardholder.paymentType,
                ),
            )

        return ChargeOutcome(result=result, record=record, job=job)
