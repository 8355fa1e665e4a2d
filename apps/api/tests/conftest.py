from __future__ import annotations

import os
import tempfile

os.environ.setdefault("PROJECTS_DIR", tempfile.mkdtemp(prefix="coursepack-tests-"))
os.environ.setdefault("LOG_LEVEL", "DEBUG")
