#!/usr/bin/env python3
"""Check the environment before starting the API or the arq worker."""

import os
import sys

REQUIRED = [
    "DATABASE_URL",
    "REDIS_URL",
    "FEISHU_APP_ID",
    "FEISHU_APP_SECRET",
    "JWT_SECRET",
]

# outside local/dev the webhook endpoint rejects everything unless one is set
WEBHOOK_AUTH = ["FEISHU_ENCRYPT_KEY", "FEISHU_VERIFICATION_TOKEN"]

NUMERIC = [
    "POLL_INTERVAL_SECONDS",
    "MAX_CONCURRENT_POLLS",
    "REMOVAL_THRESHOLD",
    "REQUEST_TIMEOUT_SECONDS",
    "SNAPSHOT_RETENTION_COUNT",
    "SNAPSHOT_RETENTION_DAYS",
]

ANALYSIS_BACKENDS = ("arq", "inline")


def _problems(env: dict[str, str]) -> list[str]:
    environment = env.get("ENVIRONMENT", "local")
    problems = [f"{name} is not set" for name in REQUIRED if not env.get(name)]

    if environment not in ("local", "dev") and not any(env.get(name) for name in WEBHOOK_AUTH):
        problems.append(f"{environment}: set {' or '.join(WEBHOOK_AUTH)}")

    for name in NUMERIC:
        value = env.get(name)
        if value is None:
            continue
        try:
            if float(value) <= 0:
                problems.append(f"{name} must be positive, got {value}")
        except ValueError:
            problems.append(f"{name} is not a number: {value!r}")

    backend = env.get("ANALYSIS_BACKEND", "arq")
    if backend not in ANALYSIS_BACKENDS:
        problems.append(f"ANALYSIS_BACKEND must be one of {', '.join(ANALYSIS_BACKENDS)}, got {backend!r}")
    return problems


def main() -> int:
    environment = os.environ.get("ENVIRONMENT", "local")
    print(f"doc-watch environment: {environment}")
    for name in REQUIRED + WEBHOOK_AUTH:
        print(f"  {name:<28} {'set' if os.environ.get(name) else '-'}")

    problems = _problems(dict(os.environ))
    if problems:
        print("\nProblems:")
        for problem in problems:
            print(f"  - {problem}")
        return 1

    print("\nEnvironment looks good.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
