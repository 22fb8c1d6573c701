import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from .auth import TokenAuthenticator
from .config import ServerConfig
from .server import create_server


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='sqlbucket', description='SQLite databases stored as whole-file images')
    parser.add_argument('--host')
    parser.add_argument('--port', type=int)
    parser.add_argument('--storage-root')
    parser.add_argument('--log-level')
    sub = parser.add_subparsers(dest='command')
    sub.add_parser('serve', help='run the HTTP server (default)')
    token = sub.add_parser('token', help='print a bearer token for a user id')
    token.add_argument('user_id')
    token.add_argument('--expires-in', type=int, default=3600)
    return parser


async def _serve(config: ServerConfig) -> None:
    server = await create_server(config)
    await server.start()
    try:
        await asyncio.Event().wait()
    finally:
        await server.stop()


def main(argv: Optional[List[str]] = None) -> int:
    args = _parser().parse_args(argv)
    config = ServerConfig.from_env().override(
        host=args.host,
        port=args.port,
        storage_root=args.storage_root,
        log_level=args.log_level.upper() if args.log_level else None
    )
    logging.basicConfig(level=config.log_level, format="[%(asctime)s] %(levelname)s: %(message)s")

    if args.command == 'token':
        if not config.jwt_secret:
            print('SQLBUCKET_JWT_SECRET is not set', file=sys.stderr)
            return 2
        print(TokenAuthenticator(config.jwt_secret, config.jwt_algorithms).issue(args.user_id, args.expires_in))
        return 0

    try:
        asyncio.run(_serve(config))
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
