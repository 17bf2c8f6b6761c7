"""
Revision workflow module.

- Open mode: edits publish immediately; no timeline is kept
- Pending mode: one version is current; newer ones wait as pending
- Mode changes are recorded in a bounded per-document audit log
"""
