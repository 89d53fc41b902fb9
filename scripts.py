#!/usr/bin/env python3
"""Development scripts for the booking engine."""

import subprocess
import sys


def start():
    """Start the development server."""
    subprocess.run([
        "uvicorn",
        "booking_engine.main:app",
        "--host", "0.0.0.0",
        "--port", "3000",
        "--reload"
    ])


def worker():
    """Start a Celery worker for side effects, expiry and reconciliation."""
    subprocess.run([
        "celery", "-A", "booking_engine.tasks.celery_app:celery_app",
        "worker", "--loglevel=info",
    ])


def beat():
    """Start Celery beat for the periodic sweeps."""
    subprocess.run([
        "celery", "-A", "booking_engine.tasks.celery_app:celery_app",
        "beat", "--loglevel=info",
    ])


def test():
    """Run the test suite."""
    sys.exit(subprocess.run(["pytest", "tests/", *sys.argv[2:]]).returncode)


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print("Usage: python scripts.py <command>")
        print("Commands: start, worker, beat, test")
        sys.exit(1)

    command = sys.argv[1].replace("-", "_")
    if hasattr(sys.modules[__name__], command):
        getattr(sys.modules[__name__], command)()
    else:
        print(f"Unknown command: {sys.argv[1]}")
        sys.exit(1)
