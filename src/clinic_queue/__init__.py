"""
Background job queue for the clinic backend.

Budget PDF rendering and patient notifications run out of the request path:
callers enqueue through `QueueManager`, workers consume through `QueueWorker`.
"""

__version__ = "1.0.0"
