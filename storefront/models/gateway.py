"""
Gateway Field Schemas - Ordered, typed field sets per request kind.

The gateway consumes an ordered key/value list. Each request kind has its own
schema here so a missing or renamed field is a constructor error, not a
silently different payload.
"""

from dataclasses import dataclass
from datetime import date

from storefront.exceptions import DecodeError
from storefront.models.domain import ResultStatus

Fields = list[tuple[str, str]]


@dataclass(frozen=True)
class UppTradeFields:
    """One-time purchase (UPP) request. Credit card only."""

    merchant_id: str
    trade_number: str
    amount: int
    timestamp: int
    description: str
    return_url: str
    notify_url: str
    customer_email: str | None = None
    pay_type: str = "C"

    def to_fields(self) -> Fields:
        fields = [
            ("MerID", self.merchant_id),
            ("MerTradeNo", self.trade_number),
            ("TradeAmt", str(self.amount)),
            ("Timestamp", str(self.timestamp)),
            ("ProdDesc", self.description),
            ("ReturnURL", self.return_url),
            ("NotifyURL", self.notify_url),
            ("PayType", self.pay_type),
        ]
        if self.customer_email:
            fields.append(("UsrMail", self.customer_email))
            fields.append(("UsrMailFix", "1"))
        fields.append(("Credit", "1"))
        return fields


@dataclass(frozen=True)
class PeriodTradeFields:
    """Subscription (period billing) enrollment request."""

    merchant_id: str
    trade_number: str
    amount: int
    description: str
    period_type: str
    period_date: str
    period_times: int
    f_type: str
    return_url: str
    notify_url: str
    first_charge_date: date | None = None
    customer_email: str | None = None

    def to_fields(self) -> Fields:
        fields = [
            ("MerID", self.merchant_id),
            ("MerTradeNo", self.trade_number),
            ("PeriodAmt", str(self.amount)),
            ("ProdDesc", self.description),
            ("PeriodType", self.period_type),
            ("PeriodDate", self.period_date),
            ("PeriodTimes", str(self.period_times)),
            ("FType", self.f_type),
        ]
        if self.first_charge_date is not None:
            fields.append(("FDate", self.first_charge_date.isoformat()))
        fields.append(("ReturnURL", self.return_url))
        fields.append(("NotifyURL", self.notify_url))
        if self.customer_email:
            fields.append(("PayerEmail", self.customer_email))
            fields.append(("PayerFix", "3"))
        return fields


@dataclass(frozen=True)
class TradeQueryFields:
    """Trade status query request."""

    merchant_id: str
    trade_number: str
    timestamp: int

    def to_fields(self) -> Fields:
        return [
            ("MerID", self.merchant_id),
            ("MerTradeNo", self.trade_number),
            ("Timestamp", str(self.timestamp)),
        ]


def _parse_amount(value: str | None) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(float(value))
    except ValueError as exc:
        raise DecodeError(f"amount is not numeric: {value!r}") from exc


@dataclass(frozen=True)
class NotifyFields:
    """
    Decrypted gateway notification (webhook or browser return).

    Unknown keys are preserved in `raw` so they can be forwarded verbatim.
    """

    trade_number: str
    status: str | None
    trade_status: str | None
    amount: int | None
    gateway_trade_seq: str | None
    period_trade_number: str | None
    message: str | None
    pay_time: str | None
    raw: tuple[tuple[str, str], ...]

    @classmethod
    def from_fields(cls, fields: Fields) -> "NotifyFields":
        """
        Parse decrypted fields.

        Raises:
            DecodeError: If MerTradeNo is missing or the amount is malformed
        """
        values = dict(fields)
        trade_number = values.get("MerTradeNo", "")
        if not trade_number:
            raise DecodeError("notification is missing MerTradeNo")
        amount_raw = values.get("TradeAmt") or values.get("PeriodAmt")
        return cls(
            trade_number=trade_number,
            status=values.get("Status"),
            trade_status=values.get("TradeStatus"),
            amount=_parse_amount(amount_raw),
            gateway_trade_seq=values.get("TradeNo") or values.get("TradeSeq"),
            period_trade_number=values.get("PeriodTradeNo") or None,
            message=values.get("Message"),
            pay_time=values.get("PayTime"),
            raw=tuple(fields),
        )

    @property
    def result_status(self) -> ResultStatus:
        """
        Map gateway status codes to a result.

        TradeStatus: 1 paid, 2 failed, 3 cancelled, 4 expired, 0/9 unpaid.
        """
        if self.trade_status == "4":
            return ResultStatus.EXPIRED
        if self.status == "SUCCESS" and self.trade_status in (None, "", "1"):
            return ResultStatus.SUCCESS
        return ResultStatus.FAILURE

    @property
    def base_trade_number(self) -> str:
        """Trade number without the recurring-charge suffix (`_<n>`)."""
        base, sep, suffix = self.trade_number.rpartition("_")
        if sep and base and suffix.isdigit():
            return base
        return self.trade_number

    @property
    def charge_sequence(self) -> int | None:
        """Sequence n of a recurring charge (`<trade number>_<n>`, n >= 1)."""
        base, sep, suffix = self.trade_number.rpartition("_")
        if sep and base and suffix.isdigit() and int(suffix) >= 1:
            return int(suffix)
        return None
