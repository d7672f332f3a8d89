"""Moderation worker exports."""

from .queue_processor import ProcessorState, ProcessResult, QueueProcessor, QueueStatus
from .timers import ManualTimer, SchedulerTimer, Timer

__all__ = [
	"ManualTimer",
	"ProcessResult",
	"ProcessorState",
	"QueueProcessor",
	"QueueStatus",
	"SchedulerTimer",
	"Timer",
]
