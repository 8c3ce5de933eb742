from bookshop.services.outbox_service import OutboxService
from bookshop.services.order_service import OrderService
from bookshop.services.payment_service import PaymentService
from bookshop.services.stock_service import StockService, StockUpdateResult

__all__ = [
    "OutboxService",
    "OrderService",
    "PaymentService",
    "StockService",
    "StockUpdateResult",
]
