from app.models.job import Job, JobStatus
from app.models.profile import BlockedUser, UserProfile
from app.models.settlement import SettlementRecord, SettlementStatus

__all__ = [
    "BlockedUser",
    "Job",
    "JobStatus",
    "SettlementRecord",
    "SettlementStatus",
    "UserProfile",
]
