"""Tokenscribe - token-metered audio transcription upload queue.

WHY: Users submit audio files for transcription and pay for each one in
tokens (one token per second of audio). The client needs to validate
files, estimate their cost, refuse what the balance cannot cover, and
drive each accepted file through the remote transcription call while
reporting live progress, without one failing file disturbing the others.

HOW: Three layers - adapters (api/) for the remote quota store and
transcription service, the queue core (core/) that owns admission,
lifecycle state and settlement, and front ends (cli, server) that
render snapshots of the queue.

RULES:
- The remote quota store is the source of truth for the balance
- Tokens are charged only after a successful transcription
- Every runtime error resolves to a terminal item state
"""

__version__ = "0.1.0"
