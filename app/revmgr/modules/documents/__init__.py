"""
Documents module.

- A document has live content (title/body/excerpt) and a list of versions
- Every content write creates a new version unless suppressed on the session
"""
