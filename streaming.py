# streaming.py
"""
Resilient Bybit v5 websocket client.

One StreamClient owns one logical connection: it authenticates private
kinds, (re)subscribes its full topic set after every successful connect,
keeps the link alive with application pings and reconnects with capped
exponential backoff until it is explicitly disconnected.
"""
import hashlib
import hmac
import json
import logging
import threading
import time
from urllib.parse import quote

import websocket

from config import StreamConfig
from errors import StreamAuthError

logger = logging.getLogger(__name__)

# Stream kinds
PUBLIC_SPOT = "public-spot"
PUBLIC_LINEAR = "public-linear"
PUBLIC_INVERSE = "public-inverse"
PUBLIC_SPREAD = "public-spread"
PUBLIC_OPTION = "public-option"
PRIVATE_ACCOUNT = "private-account"
PRIVATE_TRADE = "private-trade"

PRIVATE_KINDS = (PRIVATE_ACCOUNT, PRIVATE_TRADE)

ENDPOINTS = {
    "main": {
        PUBLIC_SPOT: "wss://stream.bybit.com/v5/public/spot",
        PUBLIC_LINEAR: "wss://stream.bybit.com/v5/public/linear",
        PUBLIC_INVERSE: "wss://stream.bybit.com/v5/public/inverse",
        PUBLIC_SPREAD: "wss://stream.bybit.com/v5/public/spread",
        PUBLIC_OPTION: "wss://stream.bybit.com/v5/public/option",
        PRIVATE_ACCOUNT: "wss://stream.bybit.com/v5/private",
        PRIVATE_TRADE: "wss://stream.bybit.com/v5/trade",
    },
    "test": {
        PUBLIC_SPOT: "wss://stream-testnet.bybit.com/v5/public/spot",
        PUBLIC_LINEAR: "wss://stream-testnet.bybit.com/v5/public/linear",
        PUBLIC_INVERSE: "wss://stream-testnet.bybit.com/v5/public/inverse",
        PUBLIC_SPREAD: "wss://stream-testnet.bybit.com/v5/public/spread",
        PUBLIC_OPTION: "wss://stream-testnet.bybit.com/v5/public/option",
        PRIVATE_ACCOUNT: "wss://stream-testnet.bybit.com/v5/private",
        PRIVATE_TRADE: "wss://stream-testnet.bybit.com/v5/trade",
    },
}

STREAM_KINDS = tuple(ENDPOINTS["main"])

# Connection states
DISCONNECTED = "disconnected"
CONNECTING = "connecting"
OPEN = "open"
AUTHENTICATING = "authenticating"
AUTHENTICATED = "authenticated"
SUBSCRIBED = "subscribed"
DISCONNECTING = "disconnecting"


def endpoint_url(network, kind, max_active_time=None):
    try:
        base = ENDPOINTS[network][kind]
    except KeyError:
        raise ValueError(f"unknown stream endpoint: network={network!r} kind={kind!r}") from None
    if kind in PRIVATE_KINDS and max_active_time:
        return f"{base}?max_active_time={quote(max_active_time)}"
    return base


def sign_realtime(secret, expires):
    """Hex HMAC-SHA256 of "GET/realtime<expires>" keyed by the api secret."""
    payload = f"GET/realtime{expires}"
    return hmac.new(secret.encode(), payload.encode(), hashlib.sha256).hexdigest()


class StreamClient:
    def __init__(self, kind, config=None, topics=(), on_open=None, on_message=None,
                 on_error=None, on_close=None, app_factory=websocket.WebSocketApp, clock=time.time):
        self.kind = kind
        self.config = config or StreamConfig()
        self.url = endpoint_url(self.config.network, kind, self.config.max_active_time)
        if self.is_private and not self.config.has_credentials:
            raise StreamAuthError(f"{kind} stream requires api_key and api_secret")

        # Ordered set; the source of truth for (re)subscription
        self.topics = dict.fromkeys(topics)
        self.backoff = self.config.backoff_floor
        self.state = DISCONNECTED

        self.on_open = on_open
        self.on_message = on_message
        self.on_error = on_error
        self.on_close = on_close

        self._app_factory = app_factory
        self._clock = clock
        self._lock = threading.RLock()
        self._closing = threading.Event()
        self._app = None
        self._thread = None
        self._heartbeat_stop = None
        self._heartbeat_thread = None

    @property
    def is_private(self):
        return self.kind in PRIVATE_KINDS

    # ---------------- Topics ----------------
    def add_topics(self, *topics):
        with self._lock:
            added = [t for t in topics if t not in self.topics]
            self.topics.update(dict.fromkeys(added))
            if added and self.state == SUBSCRIBED:
                self.send({"op": "subscribe", "args": added})

    def remove_topics(self, *topics):
        with self._lock:
            removed = [t for t in topics if t in self.topics]
            for t in removed:
                del self.topics[t]
            if removed and self.state == SUBSCRIBED:
                self.send({"op": "unsubscribe", "args": removed})

    # ---------------- Lifecycle ----------------
    def connect(self):
        """Start the connection loop in a background thread."""
        with self._lock:
            if self._thread and self._thread.is_alive():
                return
            self._closing.clear()
            self._thread = threading.Thread(target=self._run, name=f"stream-{self.kind}", daemon=True)
            self._thread.start()

    def disconnect(self, timeout=5.0):
        """Stop reconnecting and tear down heartbeat and transport."""
        with self._lock:
            self.state = DISCONNECTING
            self._closing.set()
            self._stop_heartbeat()
            app = self._app
        if app is not None:
            app.close()
        thread = self._thread
        if thread and thread is not threading.current_thread():
            thread.join(timeout)
        self.state = DISCONNECTED
        logger.info(f"[{self.kind}] disconnected")

    def _run(self):
        while not self._closing.is_set():
            with self._lock:
                if self._closing.is_set():
                    break
                self.state = CONNECTING
                self._app = self._app_factory(
                    self.url,
                    on_open=self._on_open,
                    on_message=self._on_message,
                    on_error=self._on_error,
                    on_close=self._on_close,
                )
                app = self._app
            logger.info(f"[{self.kind}] connecting to {self.url}")

            try:
                app.run_forever()
            except Exception as e:
                logger.error(f"[{self.kind}] transport loop crashed: {e}", exc_info=True)
                self._report_error(e)

            self._stop_heartbeat()
            with self._lock:
                self._app = None
                if self._closing.is_set():
                    break
                self.state = DISCONNECTED

            delay = self._next_backoff()
            logger.info(f"[{self.kind}] reconnecting in {delay:.0f}s")
            if self._wait(delay):
                break

    def _wait(self, delay):
        """Sleep for the backoff delay; True if a disconnect interrupted it."""
        return self._closing.wait(delay)

    def _next_backoff(self):
        delay = self.backoff
        self.backoff = min(self.backoff * 2, self.config.backoff_cap)
        return delay

    # ---------------- Outbound frames ----------------
    def send(self, frame):
        app = self._app
        if app is None:
            return False
        try:
            app.send(json.dumps(frame))
        except (websocket.WebSocketException, OSError) as e:
            logger.warning(f"[{self.kind}] send failed ({frame.get('op')}): {e}")
            return False
        return True

    def _authenticate(self):
        self.state = AUTHENTICATING
        expires = int((self._clock() + self.config.auth_expiry) * 1000)
        signature = sign_realtime(self.config.api_secret, expires)
        logger.info(f"[{self.kind}] authenticating (expires={expires})")
        self.send({"op": "auth", "args": [self.config.api_key, expires, signature]})

    def _subscribe_all(self):
        with self._lock:
            topics = list(self.topics)
            if topics:
                self.send({"op": "subscribe", "args": topics})
            self.state = SUBSCRIBED
        logger.info(f"[{self.kind}] subscribed to {len(topics)} topic(s)")
        self._start_heartbeat()

    # ---------------- Heartbeat ----------------
    def _start_heartbeat(self):
        self._stop_heartbeat()
        stop = threading.Event()
        interval = self.config.ping_interval

        def beat():
            while not stop.wait(interval):
                self.send({"op": "ping", "req_id": str(int(self._clock() * 1000))})

        self._heartbeat_stop = stop
        self._heartbeat_thread = threading.Thread(target=beat, name=f"ping-{self.kind}", daemon=True)
        self._heartbeat_thread.start()

    def _stop_heartbeat(self):
        if self._heartbeat_stop is not None:
            self._heartbeat_stop.set()
        self._heartbeat_stop = None
        self._heartbeat_thread = None

    # ---------------- Transport callbacks ----------------
    def _on_open(self, ws):
        self.backoff = self.config.backoff_floor
        self.state = OPEN
        logger.info(f"[{self.kind}] connection opened")
        self._call(self.on_open)

        if self.is_private:
            self._authenticate()
        else:
            self._subscribe_all()

    def _on_message(self, ws, message):
        try:
            data = json.loads(message)
        except (TypeError, ValueError) as e:
            logger.warning(f"[{self.kind}] dropping malformed frame: {str(message)[:100]}")
            self._report_error(e)
            return

        if isinstance(data, dict) and data.get("op") == "auth":
            if data.get("success") is True:
                self.state = AUTHENTICATED
                logger.info(f"[{self.kind}] authenticated")
                self._subscribe_all()
            else:
                reason = data.get("ret_msg") or "auth rejected"
                logger.error(f"[{self.kind}] authentication failed: {reason}")
                self._report_error(StreamAuthError(reason))

        self._call(self.on_message, data)

    def _on_error(self, ws, error):
        logger.error(f"[{self.kind}] websocket error: {error}")
        self._report_error(error)

    def _on_close(self, ws, close_status_code, close_msg):
        self._stop_heartbeat()
        if self.state != DISCONNECTING:
            self.state = DISCONNECTED
        logger.warning(f"[{self.kind}] connection closed: status={close_status_code}, msg={close_msg}")
        self._call(self.on_close, close_status_code, close_msg)

    def _report_error(self, error):
        self._call(self.on_error, error)

    def _call(self, callback, *args):
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            logger.error(f"[{self.kind}] error in callback: {e}", exc_info=True)


class StreamSet:
    """Independent connections, one per stream kind."""

    def __init__(self, kinds, config=None, on_message=None, on_error=None, **client_kwargs):
        self.clients = {}
        for kind in kinds:
            self.clients[kind] = StreamClient(
                kind,
                config,
                on_message=self._bind(on_message, kind),
                on_error=self._bind(on_error, kind),
                **client_kwargs,
            )

    @staticmethod
    def _bind(callback, kind):
        if callback is None:
            return None
        return lambda *args: callback(kind, *args)

    def __getitem__(self, kind):
        return self.clients[kind]

    def connect_all(self):
        for client in self.clients.values():
            client.connect()

    def disconnect_all(self):
        for client in self.clients.values():
            client.disconnect()
