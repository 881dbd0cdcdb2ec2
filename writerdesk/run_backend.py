#!/usr/bin/env python
"""
Persistent runner for the writerdesk subscription service.
Keeps uvicorn running even if it crashes.
"""
import os
import subprocess
import sys
import time

PORT = os.getenv("PORT", "8000")


def main() -> None:
    while True:
        print(f"\n[INFO] Starting writerdesk on port {PORT}...")
        try:
            subprocess.run(
                [sys.executable, "-m", "uvicorn", "writerdesk.main:app", "--host", "0.0.0.0", "--port", PORT],
                check=False,
            )
        except KeyboardInterrupt:
            print("\n[INFO] Shutting down writerdesk...")
            break

        print("[INFO] Server stopped, will restart in 2 seconds...")
        time.sleep(2)


if __name__ == "__main__":
    main()
