"""
Job Queue — rate-limited, priority-ordered dispatch of outbound WhatsApp actions.

- Dispatcher (service.py) enqueues jobs with priority, jitter and dedup
- Worker (worker.py) consumes them one at a time under a rate window and backoff
- Supports Redis (production) and an in-process broker (dev/tests)
"""
