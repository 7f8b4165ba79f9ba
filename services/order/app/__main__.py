"""
Order Service — 起動スクリプト

    python -m app
    order-service          # pip install 後のコンソールスクリプト
"""

import uvicorn

from .config import HOST, LOG_LEVEL, PORT


def main() -> None:
    uvicorn.run("app.main:app", host=HOST, port=PORT, log_level=LOG_LEVEL.lower())


if __name__ == "__main__":
    main()
