from __future__ import annotations

import sys
from pathlib import Path


# Ensure `import thinktree...` works when running `pytest` from repo root,
# and that shared fakes (`tests/llm_fakes.py`) import as a plain module.
REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))
sys.path.insert(0, str(Path(__file__).resolve().parent))
