"""HTTP API layer (FastAPI).

A small, versioned `/api/v1` surface:
- run one reasoning session and return the enriched prompt (`POST /think`)
- stream tree/thinking snapshots and usage increments as Server-Sent Events
- list configured personas

The API is intentionally thin: session behavior lives in `thinktree.agents`.
"""
