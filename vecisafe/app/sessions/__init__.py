"""
sessions — Device identity: anonymous, pending verification, verified.

    models   — Session record and phase enum
    store    — In-memory and Redis persistence
    manager  — State transitions and SMS code verification
"""
