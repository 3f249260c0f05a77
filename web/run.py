from __future__ import annotations

import logging

import uvicorn

from web.app import create_app, load_config


def main() -> None:
    cfg = load_config()
    server = cfg.get("server", {})
    host = server.get("host", "127.0.0.1")
    port = int(server.get("port", 8000))
    log_level = str(server.get("log_level", "info")).lower()
    logging.basicConfig(level=log_level.upper(), format="%(asctime)s %(name)s %(levelname)s %(message)s")
    uvicorn.run(create_app(cfg), host=host, port=port, reload=False, log_level=log_level)


if __name__ == "__main__":
    main()
