import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional

from .gateway import CourierQuote
from .state_machine import TransitionResult

logger = logging.getLogger(__name__)


@dataclass
class CourierOption:
    quote: CourierQuote
    rank: int
    badges: List[str] = field(default_factory=list)

    def as_dict(self):
        q = self.quote
        return {
            'rank': self.rank,
            'courier_id': q.courier_id,
            'name': q.name,
            'freight_charge': str(q.freight_charge),
            'cod_charge': str(q.cod_charge),
            'estimated_days': q.estimated_days,
            'serviceable': q.serviceable,
            'rating': q.rating,
            'badges': self.badges,
        }


def rank_key(quote: CourierQuote):
    """Serviceable first, then cheapest, then fastest."""
    days = quote.estimated_days if quote.estimated_days is not None else float('inf')
    return (not quote.serviceable, quote.freight_charge, days, quote.name)


class CourierSelector:

    def __init__(self, gateway, machine, store, pickup_postcode: str):
        self.gateway = gateway
        self.machine = machine
        self.store = store
        self.pickup_postcode = pickup_postcode

    @staticmethod
    def rank(quotes: List[CourierQuote]) -> List[CourierQuote]:
        return sorted(quotes, key=rank_key)

    def pick_best(self, quotes: List[CourierQuote]) -> Optional[CourierQuote]:
        ranked = [q for q in self.rank(quotes) if q.serviceable]
        return ranked[0] if ranked else None

    def options(self, quotes: List[CourierQuote]) -> List[CourierOption]:
        options = []
        for index, quote in enumerate(self.rank(quotes)):
            badges = []
            if index == 0 and quote.serviceable:
                badges.append('best')
            if quote.recommended:
                badges.append('recommended')
            badges.append('surface' if quote.is_surface else 'air')
            if quote.is_hyperlocal:
                badges.append('hyperlocal')
            if not quote.serviceable:
                badges.append('unserviceable')
            options.append(CourierOption(quote=quote, rank=index + 1, badges=badges))
        return options

    def quotes_for(self, order_id) -> List[CourierQuote]:
        order = self.store.get_order(order_id)
        info = order.shipping_info or {}
        return self.gateway.get_rates(
            pickup_postcode=self.pickup_postcode,
            delivery_postcode=info.get('pincode', ''),
            weight=order.weight,
            cod=order.payment_method == 'cod',
            declared_value=Decimal(order.subtotal),
            length=order.length,
            breadth=order.breadth,
            height=order.height,
        )

    def assign(self, order_id, selection) -> TransitionResult:
        """Assign a chosen quote, or a bare courier id."""
        if isinstance(selection, CourierQuote):
            return self.machine.assign_courier(order_id, selection.courier_id, quote=selection)
        return self.machine.assign_courier(order_id, str(selection))

    def auto_assign(self, order_id) -> TransitionResult:
        quotes = self.quotes_for(order_id)
        best = self.pick_best(quotes)
        if best is None:
            logger.warning(f"Order {order_id}: no serviceable courier among {len(quotes)} quote(s)")
            return TransitionResult(order_id=order_id, operation='assign_courier', status='no_service',
                                    data={'message': 'No courier services this route'})
        logger.info(f"Order {order_id}: auto-selected {best.name} at Rs {best.freight_charge}")
        return self.assign(order_id, best)
