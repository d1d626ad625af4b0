from app.queue.base import QueueHealth, QueueStats, WorkItem, WorkMode, WorkQueue
from app.queue.factory import get_work_queue

__all__ = ["WorkQueue", "WorkItem", "WorkMode", "QueueStats", "QueueHealth", "get_work_queue"]
