from bookshop.consumers.host import ConsumerHost
from bookshop.consumers.order_placed_consumer import OrderPlacedConsumer
from bookshop.consumers.payment_processed_consumer import PaymentProcessedConsumer

__all__ = ["ConsumerHost", "OrderPlacedConsumer", "PaymentProcessedConsumer"]
