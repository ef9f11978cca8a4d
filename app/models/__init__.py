from app.models.recovery_record import RecoveryRecord

__all__ = [
    "RecoveryRecord",
]
