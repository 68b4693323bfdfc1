from .webhook_retention import WebhookRetentionWorker

__all__ = ["WebhookRetentionWorker"]
