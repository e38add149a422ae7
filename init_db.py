#!/usr/bin/env python3
"""
Create the execution store tables for the Automation Engine.
"""

import asyncio
import sys
import os

# Add the src directory to the Python path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), 'src'))

from automation_engine.config.settings import settings
from automation_engine.database.connection import Database


async def main():
    database = Database(settings.database_url)
    print("Initializing database...")
    try:
        await database.init_db()
        print("Database initialized successfully")
    except Exception as e:
        print(f"Error initializing database: {e}")
        return 1
    finally:
        await database.dispose()
    return 0


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
