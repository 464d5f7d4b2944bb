"""Inbound sale/payment events from the billing system."""
from fastapi import APIRouter, Response, status

from affiliate_payouts.api.deps import Ledger
from affiliate_payouts.schemas.commission import SaleEvent, SaleEventResponse, CommissionResponse

router = APIRouter()


@router.post("/sale", response_model=SaleEventResponse, status_code=status.HTTP_201_CREATED)
async def record_sale(event: SaleEvent, ledger: Ledger, response: Response):
    """
    Record the commission earned by a sale.

    Redelivery of the same (affiliate, source, linked payment) returns the
    existing commission with ``created: false`` and HTTP 200.
    """
    commission, created = await ledger.record_commission(
        affiliate_id=event.affiliate_id,
        source=event.source_type,
        amount=event.amount,
        currency=event.currency,
        rate=event.rate,
        linked_payment_id=event.linked_payment_id,
        sale_amount=event.sale_amount,
        notes=event.notes,
    )
    if not created:
        response.status_code = status.HTTP_200_OK

    return SaleEventResponse(
        created=created,
        commission=CommissionResponse.model_validate(commission),
    )
