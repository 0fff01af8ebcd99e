#!/usr/bin/env python3
"""
Local development server for the cluster review API.
Runs uvicorn with reload against the database named by DATABASE_URL.
"""

import os
import sys
from pathlib import Path

# Load environment variables from .env file
from dotenv import load_dotenv
load_dotenv()

# Add src to Python path
current_dir = Path(__file__).parent
src_dir = current_dir / "src"
sys.path.insert(0, str(src_dir))

if not os.getenv('DATABASE_URL'):
    print("WARNING: DATABASE_URL not set, using postgresql+psycopg2://postgres@localhost:5432/review")
if not os.getenv('KAFKA_BOOTSTRAP_SERVERS'):
    print("NOTE: KAFKA_BOOTSTRAP_SERVERS not set; the backfill task will skip every tick")

if __name__ == "__main__":
    import uvicorn
    from cluster_review.config import get_settings

    settings = get_settings()
    print("Starting cluster review API")
    print(f"Docs: http://localhost:{settings.api_port}/docs")
    print(f"Health Check: http://localhost:{settings.api_port}/health")
    print("Press Ctrl+C to stop\n")

    uvicorn.run(
        "cluster_review.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=True,
        log_level=settings.log_level.lower()
    )
