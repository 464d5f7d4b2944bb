"""
CSV rendering for commission reports and payout batches.

Batch exports come in two layouts:
- reconciliation: one row per batch item with its current outcome
- provider: the provider's bulk-transfer upload template (Paystack, Kora)

Items whose account details cannot fill the provider template are left out
of the file and reported in ``errors``.
"""
import csv
import io
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, List, Optional, Sequence, Tuple

from affiliate_payouts.models.affiliate import AffiliateAccount
from affiliate_payouts.models.commission import Commission
from affiliate_payouts.models.payout_batch import PayoutBatch, BatchItem
from affiliate_payouts.models.withdrawal import WithdrawalRequest, PayoutChannel
from affiliate_payouts.services.currency_normalizer import quantize_money


COMMISSION_CSV_HEADERS = [
    "Affiliate", "Email", "Type", "Commission(USD)", "SaleAmount(USD)", "Rate", "Status", "Date",
]

RECONCILIATION_CSV_HEADERS = [
    "reference", "affiliate_id", "amount_usd", "amount", "currency",
    "status", "provider_reference", "failure_reason",
]

PAYSTACK_CSV_HEADERS = ["amount", "recipient", "reason"]

KORA_CSV_HEADERS = [
    "reference", "amount", "currency", "bank_code", "account_number", "account_name", "narration",
]

SOURCE_LABELS = {
    "referral_membership": "Referral Membership",
    "learner_renewal": "Learner Renewal",
    "dcs_addon": "DCS Add-on",
    "affiliate_referral": "Affiliate Referral",
}


class ExportLayout:
    RECONCILIATION = "reconciliation"
    PROVIDER = "provider"


@dataclass
class ExportResult:
    csv: str
    filename: str
    row_count: int = 0
    errors: List[str] = field(default_factory=list)


def _render(headers: Sequence[str], rows: Iterable[Sequence]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(headers)
    writer.writerows(rows)
    return buffer.getvalue()


def _money(value) -> str:
    return f"{quantize_money(value or 0):.2f}"


# ==================== COMMISSIONS ====================

def render_commission_csv(rows: Iterable[Tuple[Commission, Optional[AffiliateAccount]]]) -> str:
    """Commission report. Monetary columns are the stored USD values."""
    lines = []
    for commission, affiliate in rows:
        lines.append([
            (affiliate.full_name if affiliate and affiliate.full_name else str(commission.affiliate_id)),
            (affiliate.email if affiliate and affiliate.email else ""),
            SOURCE_LABELS.get(commission.source, commission.source),
            _money(commission.amount_usd),
            _money(commission.sale_amount_usd),
            f"{Decimal(commission.rate or 0).normalize():f}",
            commission.status,
            commission.created_at.strftime("%Y-%m-%d") if commission.created_at else "",
        ])
    return _render(COMMISSION_CSV_HEADERS, lines)


# ==================== BATCHES ====================

def render_reconciliation_csv(batch: PayoutBatch, items: Sequence[Tuple[BatchItem, WithdrawalRequest]]) -> ExportResult:
    lines = []
    for item, withdrawal in items:
        lines.append([
            item.reference,
            str(withdrawal.user_id),
            _money(item.amount),
            _money(item.amount_local),
            item.currency,
            item.item_status,
            item.provider_reference or "",
            item.failure_reason or "",
        ])
    return ExportResult(
        csv=_render(RECONCILIATION_CSV_HEADERS, lines),
        filename=f"{batch.batch_reference}_reconciliation.csv",
        row_count=len(lines),
    )


def render_paystack_csv(batch: PayoutBatch, items: Sequence[Tuple[BatchItem, WithdrawalRequest]]) -> ExportResult:
    """
    Paystack bulk transfer: amount in the lowest currency unit (pesewas,
    kobo), a pre-created recipient code and a reason.
    """
    lines, errors = [], []
    for item, withdrawal in items:
        recipient = str((withdrawal.account_details or {}).get("recipient_code") or "").strip()
        if not recipient:
            errors.append(f"Missing recipient code for user {withdrawal.user_id} ({item.reference})")
            continue
        amount_minor = int((Decimal(item.amount_local) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
        lines.append([amount_minor, recipient, f"Withdrawal {item.reference}"])

    return ExportResult(
        csv=_render(PAYSTACK_CSV_HEADERS, lines),
        filename=f"paystack_bulk_transfer_{_today()}.csv",
        row_count=len(lines),
        errors=errors,
    )


def render_kora_csv(batch: PayoutBatch, items: Sequence[Tuple[BatchItem, WithdrawalRequest]]) -> ExportResult:
    """
    Kora bulk transfer: amount in major units. Mobile money rows use the
    network code as bank_code.
    """
    lines, errors = [], []
    for item, withdrawal in items:
        details = withdrawal.account_details or {}
        narration = f"Affiliate payout - {item.reference}"

        if withdrawal.payout_channel == PayoutChannel.BANK.value:
            if not all(details.get(f) for f in ("bank_code", "account_number", "account_name")):
                errors.append(f"Missing bank details for withdrawal {item.reference}")
                continue
            bank_code, account_number = details["bank_code"], details["account_number"]
            account_name = details["account_name"]
        elif withdrawal.payout_channel == PayoutChannel.MOBILE_MONEY.value:
            if not all(details.get(f) for f in ("network_code", "mobile_number")):
                errors.append(f"Missing mobile money details for withdrawal {item.reference}")
                continue
            bank_code, account_number = details["network_code"], details["mobile_number"]
            account_name = details.get("account_name") or ""
        else:
            errors.append(f"Unknown payout channel for withdrawal {item.reference}")
            continue

        lines.append([
            item.reference,
            _money(item.amount_local),
            item.currency,
            bank_code,
            account_number,
            account_name,
            narration,
        ])

    return ExportResult(
        csv=_render(KORA_CSV_HEADERS, lines),
        filename=f"kora_bulk_transfer_{_today()}.csv",
        row_count=len(lines),
        errors=errors,
    )


PROVIDER_RENDERERS = {
    "PAYSTACK": render_paystack_csv,
    "KORA": render_kora_csv,
}


def _today() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")
