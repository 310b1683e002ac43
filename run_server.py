#!/usr/bin/env python3
"""Run the studio API server"""

import uvicorn

from studio_api.config import operator_config


def main():
    """Run the FastAPI server"""
    host = operator_config.get("server.host", "127.0.0.1")
    port = operator_config.get("server.port", 8008)
    log_level = operator_config.get("server.log_level", "info")

    print("Starting Reality Studio Orchestrator")
    print(f"Server: {host}:{port}")
    print(f"Log level: {log_level}")
    print(f"Media: {operator_config.get('storage.media_dir')} -> {operator_config.get('storage.public_base_url')}")
    print("-" * 50)

    uvicorn.run(
        "studio_api:app",
        host=host,
        port=port,
        log_level=log_level,
        reload=True
    )


if __name__ == "__main__":
    main()
