from ...schemas import Customer, OrderOrMandate, PendingAction, PendingActionKind, ResourceKind
from .base import PaymentGateway


class RazorpayGateway(PaymentGateway):
    """Modal popup checkout; orders and recurring subscriptions."""

    id = "razorpay"
    display_name = "Razorpay"

    def __init__(self, backend, cache, *, key_id: str = "", **kwargs):
        super().__init__(backend, cache, **kwargs)
        self.key_id = key_id

    def supports_recurring(self) -> bool:
        return True

    def open_checkout_ui(self, resource: OrderOrMandate, prefill: Customer, description: str) -> PendingAction:
        options = {
            "key": self.key_id,
            "name": self.merchant_name,
            "description": description,
            "prefill": {"name": prefill.name, "email": prefill.email, "contact": prefill.phone or ""},
        }
        if resource.kind is ResourceKind.RECURRING_MANDATE:
            options.update({"subscription_id": resource.external_id, "recurring": 1})
        else:
            options.update(
                {
                    "order_id": resource.external_id,
                    "amount": str(resource.amount),
                    "currency": resource.currency,
                }
            )
        return PendingAction(kind=PendingActionKind.OPEN_GATEWAY, gateway=self.id, payload=options)
