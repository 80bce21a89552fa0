"""Domain errors raised by the fraud engine."""


class FraudEngineError(Exception):
    """Base class for fraud engine failures."""


class NotFoundError(FraudEngineError, LookupError):
    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(f"{entity} not found: {entity_id}")
        self.entity = entity
        self.entity_id = entity_id


class AlertAlreadyResolvedError(FraudEngineError, ValueError):
    def __init__(self, alert_id: str, status: str) -> None:
        super().__init__(f"Alert {alert_id} is already {status}")
        self.alert_id = alert_id
        self.status = status


class StorageError(FraudEngineError):
    """Persistence layer unavailable or failed mid-check."""
