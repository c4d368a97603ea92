"""
alerts — Incident reporting and proximity fanout.

Sub-modules:
    channels/  — Outbound transports (push notifications, verification SMS)
    models     — Alert, DeliveryIntent and their enums
    store      — Append-only, time-ordered alert ledger
    fanout     — Per-recipient delivery with retry and backoff
    service    — Reporting orchestration and feed reads
"""
