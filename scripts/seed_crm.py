"""
Create tables and seed the permission catalog, the first administrator and
default settings. Run from the project root:

    python scripts/seed_crm.py
"""
import os
import sys

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Load environment variables before the settings object is built
from dotenv import load_dotenv

load_dotenv()

from crm.config import settings  # noqa: E402
from crm.db import Base, SessionLocal, engine  # noqa: E402
from crm.models import models  # noqa: E402,F401
from crm.seed import run_seed  # noqa: E402


def main() -> int:
    if settings.database_url.startswith("sqlite:///./"):
        os.makedirs(os.path.dirname(settings.database_url.replace("sqlite:///./", "")) or ".", exist_ok=True)
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        result = run_seed(db)
    finally:
        db.close()
    print(f"Permissions added: {result['permissions_added']}")
    print(f"Admin created: {'yes (' + settings.seed_admin_email + ')' if result['admin_created'] else 'no, one already exists'}")
    print(f"Settings added: {result['settings_added']}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
