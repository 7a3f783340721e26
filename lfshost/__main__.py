"""Main module for lfshost."""

import sys

import uvicorn

from lfshost.core import ConfigurationError
from lfshost.server import create_application, get_argparser


def main():
    """Main entry point for the CLI."""
    # If no arguments provided, automatically add --from-env
    if len(sys.argv) == 1:
        sys.argv.append("--from-env")

    arg_parser = get_argparser()
    opt = arg_parser.parse_args()
    try:
        app = create_application(opt)
    except ConfigurationError as e:
        sys.exit(f"Configuration error: {e}")

    uvicorn.run(app, host=opt.host, port=int(opt.port))


if __name__ == "__main__":
    main()
