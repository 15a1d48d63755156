#!/usr/bin/env python3
"""WebSocket signaling relay that pairs peers into two-party sessions.

Peers join a room; the relay seats them two at a time in sessions and
forwards offers, answers, candidates and recording requests between the
members of a session. Plain HTTP requests on the same port can serve a
static client page.

Usage:
    python3 relay.py                 # ws://0.0.0.0:8080
    python3 relay.py 9000            # port as in the original one-liner
    python3 relay.py --static public --log-level DEBUG
"""
import argparse, asyncio, logging, mimetypes, os, sys
from dataclasses import dataclass
from http import HTTPStatus
from typing import Optional
from urllib.parse import unquote, urlsplit

from websockets.asyncio.server import serve
from websockets.datastructures import Headers
from websockets.exceptions import ConnectionClosedError
from websockets.http11 import Response

from connections import ConnectionRegistry
from router import MessageRouter
from sessions import SessionDirectory

log = logging.getLogger('relay')

# ============ CONFIG ============

@dataclass
class RelayConfig:
    host: str = '0.0.0.0'
    port: int = 8080
    static_dir: Optional[str] = None
    ping_interval: float = 30.0       # heartbeat period, seconds
    sweep_interval: float = 300.0     # expiry sweeper period, seconds
    session_timeout: float = 3600.0   # empty sessions older than this are evicted
    max_size: int = 64 * 1024         # largest accepted frame, bytes
    log_level: str = 'INFO'


def parse_args(argv=None) -> RelayConfig:
    p = argparse.ArgumentParser(description='Pairwise WebRTC signaling relay')
    p.add_argument('port_arg', nargs='?', type=int, metavar='PORT', help='Port (same as --port)')
    p.add_argument('--host', default=RelayConfig.host, help='Bind address (default: all interfaces)')
    p.add_argument('--port', type=int, default=RelayConfig.port)
    p.add_argument('--static', dest='static_dir', help='Directory served to plain HTTP requests')
    p.add_argument('--ping-interval', type=float, default=RelayConfig.ping_interval)
    p.add_argument('--sweep-interval', type=float, default=RelayConfig.sweep_interval)
    p.add_argument('--session-timeout', type=float, default=RelayConfig.session_timeout)
    p.add_argument('--max-size', type=int, default=RelayConfig.max_size)
    p.add_argument('--log-level', default=RelayConfig.log_level,
                   choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'])
    args = p.parse_args(argv)
    return RelayConfig(
        host=args.host,
        port=args.port_arg if args.port_arg is not None else args.port,
        static_dir=args.static_dir,
        ping_interval=args.ping_interval,
        sweep_interval=args.sweep_interval,
        session_timeout=args.session_timeout,
        max_size=args.max_size,
        log_level=args.log_level,
    )

# ============ STATIC FILES ============

MAX_STATIC_BYTES = 1024 * 1024


def static_responder(root: str):
    """Build a websockets ``process_request`` hook serving files under ``root``.

    WebSocket upgrades pass through untouched. Files are read synchronously
    on the event loop, so anything over MAX_STATIC_BYTES is refused.
    """
    root = os.path.realpath(root)

    def process_request(connection, request):
        if request.headers.get('Upgrade', '').lower() == 'websocket':
            return None
        path = unquote(urlsplit(request.path).path)
        if path.endswith('/'):
            path += 'index.html'
        full = os.path.realpath(os.path.join(root, path.lstrip('/')))
        if os.path.commonpath([root, full]) != root or not os.path.isfile(full):
            return connection.respond(HTTPStatus.NOT_FOUND, 'Not found\n')
        if os.path.getsize(full) > MAX_STATIC_BYTES:
            return connection.respond(HTTPStatus.FORBIDDEN, 'File too large\n')
        with open(full, 'rb') as f:
            body = f.read()
        ctype = mimetypes.guess_type(full)[0] or 'application/octet-stream'
        headers = Headers([('Content-Type', ctype), ('Content-Length', str(len(body)))])
        return Response(HTTPStatus.OK.value, HTTPStatus.OK.phrase, headers, body)

    return process_request

# ============ SERVER ============

async def every(interval: float, tick, name: str):
    """Call ``tick`` every ``interval`` seconds until cancelled."""
    while True:
        await asyncio.sleep(interval)
        try:
            tick()
        except Exception:
            log.exception('%s tick failed', name)


class SignalRelay:
    def __init__(self, config: Optional[RelayConfig] = None,
                 directory: Optional[SessionDirectory] = None):
        self.config = config or RelayConfig()
        self.router = MessageRouter(directory)
        self.directory = self.router.directory
        self.registry = ConnectionRegistry(on_dead=self.router.disconnect)
        self.server = None
        self._tasks = []

    async def handle(self, ws):
        """Handle one WebSocket connection for its whole life."""
        peer = self.registry.add(ws)
        try:
            async for raw in ws:
                self.router.handle(peer, raw)
        except ConnectionClosedError as e:
            log.debug('%r dropped: %s', peer, e)
        finally:
            self.registry.discard(peer)
            self.router.disconnect(peer)

    def heartbeat(self):
        return self.registry.heartbeat()

    def sweep(self):
        return self.directory.sweep(self.config.session_timeout)

    @property
    def port(self) -> Optional[int]:
        if self.server is None:
            return None
        return self.server.sockets[0].getsockname()[1]

    async def start(self):
        cfg = self.config
        process_request = static_responder(cfg.static_dir) if cfg.static_dir else None
        # keepalive is ours: ping_interval=None turns off the library's own
        self.server = await serve(self.handle, cfg.host, cfg.port,
                                  process_request=process_request,
                                  ping_interval=None, max_size=cfg.max_size)
        self._tasks = [
            asyncio.ensure_future(every(cfg.ping_interval, self.heartbeat, 'heartbeat')),
            asyncio.ensure_future(every(cfg.sweep_interval, self.sweep, 'sweeper')),
        ]
        log.info('Signal relay on ws://%s:%s', cfg.host, self.port)
        return self

    async def stop(self):
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        if self.server is not None:
            self.server.close()
            await self.server.wait_closed()
            self.server = None
        log.info('Signal relay stopped (%s)', self.directory.stats())

    async def run_forever(self):
        await self.start()
        try:
            await asyncio.Future()  # run forever
        finally:
            await self.stop()


def main(argv=None):
    config = parse_args(argv)
    logging.basicConfig(level=config.log_level,
                        format='%(asctime)s %(levelname)s %(name)s: %(message)s')
    try:
        asyncio.run(SignalRelay(config).run_forever())
    except KeyboardInterrupt:
        log.info('Interrupted')
    return 0


if __name__ == '__main__':
    sys.exit(main())
