"""
QuillSwitch Migration Engine

Moves CRM records between systems (e.g. Salesforce to HubSpot) in bounded,
concurrent, resumable batches.

Supports:
- Schema lookup with per-object-type fallbacks
- Heuristic and AI-assisted field mapping with transformation rules
- Batched extraction and loading with rate-limit aware retries
- Bounded batch concurrency with pause, resume and cancel
- Error classification, retry and an operator-facing error monitor
- Live progress snapshots and push updates
"""

__version__ = "0.1.0"
