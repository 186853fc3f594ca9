from .node import WorkerMetrics, WorkerNode, checkpoint_key, output_key

__all__ = ["WorkerNode", "WorkerMetrics", "checkpoint_key", "output_key"]
