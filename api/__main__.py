"""Command line interface for running the storefront API server."""
import argparse
import logging

import uvicorn

from config import settings_conf

def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the storefront API server")
    parser.add_argument("--host", default=settings_conf['api_host'], help="Interface to bind")
    parser.add_argument("--port", type=int, default=settings_conf['api_port'], help="Port to listen on")
    parser.add_argument("--reload", action="store_true", help="Reload on code changes")
    return parser.parse_args(argv)

def main(argv=None) -> None:
    """Configure logging and serve the API until interrupted."""
    args = parse_args(argv)

    # Configure logging
    logging.basicConfig(
        level=settings_conf['log_level'],
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    logger = logging.getLogger(__name__)
    logger.info(f"Starting API server on {args.host}:{args.port}")

    uvicorn.run(
        "api:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=settings_conf['log_level'].lower()
    )

if __name__ == "__main__":
    main()
