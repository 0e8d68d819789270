# Durable task queue and worker pool
from .task_queue import QueuedTask, TaskOptions, TaskQueue, TaskSpec, TaskState
from .worker_pool import WorkerPool

__all__ = [
    "QueuedTask",
    "TaskOptions",
    "TaskQueue",
    "TaskSpec",
    "TaskState",
    "WorkerPool",
]
