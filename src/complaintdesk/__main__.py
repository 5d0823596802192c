"""Run the complaint desk API with uvicorn: ``python -m complaintdesk``."""

from __future__ import annotations

import os

import uvicorn


def main() -> None:
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8080"))
    uvicorn.run("complaintdesk.app:create_app", factory=True, host=host, port=port)


if __name__ == "__main__":
    main()
