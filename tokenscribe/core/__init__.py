"""Upload queue core - admission, lifecycle state, and quota settlement.

WHY: This package is the only part of tokenscribe with concurrency,
state-machine, and resource-accounting logic. Front ends (CLI, HTTP
server) only render what the queue reports.

HOW: costs.py and probe.py turn a raw file into a priced candidate,
admission.py gates it against the token balance, queue.py tracks the
admitted items, runner.py drives each one through the remote call and
settlement.py charges for it. uploader.py wires them together.

RULES:
- Only the queue manager and the job runner mutate queue items
- The session is passed in explicitly, never looked up globally
- No module in this package imports tokenscribe.config at import time
  except through leaf modules (costs, probe, progress)
"""
