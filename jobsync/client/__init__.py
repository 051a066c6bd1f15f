from .channels import EventStreamClient, JobMonitor, ManualRefresh, StatusPoller
from .estimator import UploadPhase, UploadSession, estimate, format_duration
from .reconciler import ChannelUpdate, Decision, JobView, Reconciler, Source, evaluate
from .uploads import UploadClient

__all__ = [
    "ChannelUpdate",
    "Decision",
    "EventStreamClient",
    "JobMonitor",
    "JobView",
    "ManualRefresh",
    "Reconciler",
    "Source",
    "StatusPoller",
    "UploadClient",
    "UploadPhase",
    "UploadSession",
    "estimate",
    "evaluate",
    "format_duration",
]
