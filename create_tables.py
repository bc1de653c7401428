"""
Database setup script
Creates the exam attempt tables without starting the API.
Run this once against a fresh database (the app lifespan does the same on boot).
"""

from dotenv import load_dotenv
load_dotenv()

from database.database import engine, Base
from database import models  # noqa: F401  (registers tables on Base.metadata)


def create_tables():
    """Create all tables in the database"""
    print("Creating database tables...")
    Base.metadata.create_all(bind=engine)
    print("Tables created successfully!")
    print("\nTables:")
    for name in sorted(Base.metadata.tables):
        print(f"  - {name}")


if __name__ == "__main__":
    create_tables()
