"""Recursive Tree-of-Thought engine.

A query becomes a root node; each node is either decomposed into sub-problems
(solved concurrently, then aggregated) or solved directly as a leaf with the
Deliberation Pipeline. Progress is published as immutable `TreeState` snapshots.
"""
