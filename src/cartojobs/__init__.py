"""cartojobs: asynchronous job dispatch for the mapping platform.

Request handlers submit import, export and AI jobs through
``JobSubmitter``; worker processes claim and run them from per-family
queues on a shared broker.
"""

__version__ = "0.1.0"
