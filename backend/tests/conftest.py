from __future__ import annotations

import os

from recovery_fakes import TEST_ENCRYPTION_KEY

os.environ.setdefault("ENCRYPTION_KEY", TEST_ENCRYPTION_KEY)
