"""Deliberation Pipeline: diverge, critique, synthesize, finalize.

Used on its own for flat sessions and as the leaf solver inside the tree engine.
"""
