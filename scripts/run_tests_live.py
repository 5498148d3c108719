#!/usr/bin/env python3
"""
Start the API server (in-memory store, no API key: Jey escalates on free text), run the
live API tests against it, then stop the server.
Usage: python scripts/run_tests_live.py
(Run from project root with venv activated.)
"""

import os
import subprocess
import sys
import time

# Add project root for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from tests.http_client import get, is_up

BASE_URL = "http://127.0.0.1:8765"


def wait_for_server(timeout=10):
    for _ in range(timeout):
        if is_up(f"{BASE_URL}/health") and get(f"{BASE_URL}/health").status_code == 200:
            return True
        time.sleep(1)
    return False


def main():
    root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    os.chdir(root)
    env = os.environ.copy()
    env.setdefault("STORE_BACKEND", "memory")
    env["OPENAI_API_KEY"] = ""
    proc = subprocess.Popen(
        [sys.executable, "-m", "uvicorn", "elitereply.main:app", "--host", "127.0.0.1", "--port", "8765"],
        cwd=root,
        env=env,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
    )
    try:
        if not wait_for_server():
            print("Server did not start in time.")
            sys.exit(1)
        env["BASE_URL"] = BASE_URL
        result = subprocess.run(
            [sys.executable, "-m", "pytest", "tests/test_live_api.py", "-v"],
            env=env,
        )
        sys.exit(result.returncode)
    finally:
        proc.terminate()
        proc.wait(timeout=5)


if __name__ == "__main__":
    main()
