"""Pytest configuration.

Ensures that the repository root is importable so that ``tracker_agent`` can
be resolved when tests are executed without installing the package, and keeps
the agent's log file out of the working tree.
"""

import os
import sys
import tempfile
from pathlib import Path

# Add the repository root (the directory containing this file) to ``sys.path``
# if it is not already present.  This mirrors the behaviour of running Python
# scripts directly from the project root.
ROOT = Path(__file__).resolve().parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# ``tracker_agent.logger`` reads this at import time.
os.environ.setdefault(
    "TRACKER_LOG_DIR", str(Path(tempfile.gettempdir()) / "tracker_agent_tests")
)
