"""
Proposals module.

- Proposals are numbered once and never deleted (superseded/rejected ones stay as record)
- Status changes go through the lifecycle validator; overrides are explicit and audited
- Source files round-trip byte-for-byte; only edited header fields are rewritten
"""
