import os
import sys
import tempfile
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Keep logs, config and the default database out of the user's data dir.
os.environ.setdefault("OUTBOX_DATA_DIR", tempfile.mkdtemp(prefix="outbox-tests-"))
