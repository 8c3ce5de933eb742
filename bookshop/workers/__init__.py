from bookshop.workers.outbox_relay import OutboxRelay

__all__ = ["OutboxRelay"]
