"""
Feature modules live under this package.

`documents` is the host's document store (content plus automatic versions);
`revisions` owns the workflow built on top of it and only talks to
`documents` through its store functions.
"""
