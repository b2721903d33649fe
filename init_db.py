#!/usr/bin/env python3
"""
Database initialization script for Docker.
Creates the render_jobs table before the API and workers start.
"""

import logging
import sys

from sqlalchemy.exc import SQLAlchemyError

from database import init_db

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")


def main():
    try:
        init_db()
    except SQLAlchemyError as e:
        logging.error(f"❌ Error creating database tables: {e}")
        sys.exit(1)
    logging.info("✅ Database tables created successfully!")


if __name__ == "__main__":
    main()
