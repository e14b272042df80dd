from .dispatcher import RQIngestionTaskDispatcher, ThreadIngestionTaskDispatcher

__all__ = ["RQIngestionTaskDispatcher", "ThreadIngestionTaskDispatcher"]
