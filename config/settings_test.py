import os

os.environ.setdefault("DEBUG", "True")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("DATABASE_URL", "sqlite:///db.sqlite3")

from .settings import *  # noqa: E402,F401,F403
from .settings import BASE_DIR, DATABASES  # noqa: E402

if DATABASES["default"]["ENGINE"].endswith("sqlite3"):
    # File-backed, so worker threads in concurrency tests share one database
    DATABASES["default"]["TEST"] = {"NAME": str(BASE_DIR / "test_orderflow.sqlite3")}

CELERY_TASK_ALWAYS_EAGER = True
CELERY_TASK_EAGER_PROPAGATES = True
