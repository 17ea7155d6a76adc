"""thinktree: turn a raw request into a refined final prompt by structured LLM reasoning."""

__version__ = "0.1.0"
