#!/usr/bin/env python3
"""Sweep expired sessions, verification codes and rate-limit windows.

Meant for cron or a systemd timer; safe to run concurrently on several hosts.

Usage:
    python scripts/run_maintenance.py
"""
from __future__ import annotations

import json


def main():
    from rideauth.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        summary = runtime.run_maintenance()
    finally:
        runtime.close()
    print(json.dumps(summary))


if __name__ == "__main__":
    main()
