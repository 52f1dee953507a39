"""
Run the gate server with uvicorn.

Environment Variables:
    GATE_HOST: Interface to bind (default: 127.0.0.1)
    GATE_PORT: Port to listen on (default: 8000)
"""

import logging
import os
import sys

import uvicorn


def main() -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    host = os.environ.get("GATE_HOST", "127.0.0.1")
    try:
        port = int(os.environ.get("GATE_PORT", "8000"))
    except ValueError:
        logging.getLogger(__name__).error(
            f"Invalid GATE_PORT={os.environ.get('GATE_PORT')}"
        )
        return 1

    uvicorn.run("gate_server.app:app", host=host, port=port)
    return 0


if __name__ == "__main__":
    sys.exit(main())
