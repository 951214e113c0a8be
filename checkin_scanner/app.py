"""
Main Application Module for the Check-in Scanner

This module contains the Flask application that wires the document store,
the registration and attendance services and the per-browser scan
sessions together, and exposes them over HTTP to the scanner UI.

The attendance core is asyncio based. The app owns one event loop running
on a background thread; request handlers submit coroutines to it and wait
for their results.
"""

import asyncio
import json
import logging
import os
import threading
import time
import uuid
from datetime import timedelta
from typing import Any, AsyncIterator, Dict, Optional

from flask import Flask, Response, jsonify, request, session

from .exceptions import CheckinScannerException, DataValidationException, NotFoundError
from .logging_config import configure_logging
from .repositories import DocumentStore, RepositoryFactory
from .scanner import ScanSessionController
from .services import AttendanceCommitter, AttendanceValidator, RegistrationService

logger = logging.getLogger(__name__)

_DONE = object()
_IDLE = object()


async def _next_item(stream: AsyncIterator) -> Any:
    try:
        return await stream.__anext__()
    except StopAsyncIteration:
        return _DONE


async def _invoke(func, *args) -> Any:
    return func(*args)


class _StreamReader:
    """
    Pulls items from an async iterator on the loop

    A read that is still pending when `keepalive` expires is kept and
    resumed by the next call, so no item is lost and no request waits
    longer than `keepalive`.
    """

    def __init__(self, stream: AsyncIterator, keepalive: float):
        self.stream = stream
        self.keepalive = keepalive
        self._pending: Optional[asyncio.Future] = None

    async def next(self) -> Any:
        """Next item, `_DONE` when exhausted or `_IDLE` when nothing arrived in time"""
        if self._pending is None:
            self._pending = asyncio.ensure_future(_next_item(self.stream))
        done, _ = await asyncio.wait({self._pending}, timeout=self.keepalive)
        if not done:
            return _IDLE
        pending, self._pending = self._pending, None
        return pending.result()

    async def close(self) -> None:
        if self._pending is not None:
            self._pending.cancel()
            try:
                await self._pending
            except asyncio.CancelledError:
                pass
            self._pending = None
        await self.stream.aclose()


class EventLoopRunner:
    """Runs one asyncio loop on a daemon thread and executes work on it"""

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout
        self.loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run, name="checkin-loop", daemon=True)
        self._thread.start()

    def _run(self) -> None:
        asyncio.set_event_loop(self.loop)
        self.loop.run_forever()

    def run(self, coro) -> Any:
        """Execute a coroutine on the loop and wait for its result"""
        return asyncio.run_coroutine_threadsafe(coro, self.loop).result(self.timeout)

    def call(self, func, *args) -> Any:
        """Execute a plain callable on the loop thread"""
        return self.run(_invoke(func, *args))

    def stop(self) -> None:
        if self.loop.is_running():
            self.loop.call_soon_threadsafe(self.loop.stop)
            self._thread.join(timeout=5)


class CheckinScannerApp:
    """
    Main Flask application class for the Check-in Scanner

    Orchestrates the store, the services and the scan sessions, one scan
    session per browser session.
    """

    def __init__(self, config: Optional[dict] = None, store: Optional[DocumentStore] = None):
        """
        Initialize the application

        Args:
            config: Optional configuration dictionary
            store: Optional pre-built document store, overrides STORE_BACKEND
        """
        self.app = Flask(__name__)
        self._configure_app(config)
        configure_logging(self.config['LOG_LEVEL'])

        self.runner = EventLoopRunner(self.config['REQUEST_TIMEOUT'])
        self.store = store or self._create_store()

        self.registration_service = RegistrationService(self.store)
        self.validator = AttendanceValidator(self.store)
        self.committer = AttendanceCommitter(self.store)
        self._scanners: Dict[str, ScanSessionController] = {}
        self._last_used: Dict[str, float] = {}
        self._scanners_lock = threading.Lock()
        self.clock = time.monotonic

        self._register_routes()
        self._register_error_handlers()

    def _configure_app(self, config: Optional[dict] = None) -> None:
        """
        Configure application settings

        Defaults come from the environment and are overridden by `config`.
        """
        default_config = {
            'SECRET_KEY': os.environ.get('FLASK_SECRET_KEY', 'dev-secret-key-change-in-production'),
            'PERMANENT_SESSION_LIFETIME': timedelta(days=1),
            'DEBUG': os.environ.get('DEBUG_MODE', 'False') == 'True',
            'STORE_BACKEND': os.environ.get('STORE_BACKEND', 'memory'),
            'REDIS_HOST': os.environ.get('REDIS_HOST', 'localhost'),
            'REDIS_PORT': int(os.environ.get('REDIS_PORT', 6379)),
            'REDIS_DB': int(os.environ.get('REDIS_DB', 0)),
            'REDIS_PREFIX': os.environ.get('REDIS_PREFIX', 'checkin'),
            'LOG_LEVEL': os.environ.get('LOG_LEVEL', 'INFO'),
            'REQUEST_TIMEOUT': 30.0,
            'STREAM_KEEPALIVE': 15.0,
            'SCANNER_IDLE_TIMEOUT': None,
        }

        if config:
            default_config.update(config)

        lifetime = default_config['PERMANENT_SESSION_LIFETIME']
        if default_config['SCANNER_IDLE_TIMEOUT'] is None:
            default_config['SCANNER_IDLE_TIMEOUT'] = (
                lifetime.total_seconds() if isinstance(lifetime, timedelta) else float(lifetime)
            )

        self.config = default_config
        self.app.secret_key = default_config['SECRET_KEY']
        self.app.permanent_session_lifetime = default_config['PERMANENT_SESSION_LIFETIME']
        self.app.config['DEBUG'] = default_config['DEBUG']

    def _create_store(self) -> DocumentStore:
        return RepositoryFactory.create_store(
            self.config['STORE_BACKEND'],
            host=self.config['REDIS_HOST'],
            port=self.config['REDIS_PORT'],
            db=self.config['REDIS_DB'],
            prefix=self.config['REDIS_PREFIX'],
        )

    def _register_routes(self) -> None:
        """Register all Flask routes"""
        self.app.add_url_rule("/registrations", "register", self.register, methods=["POST"])
        self.app.add_url_rule("/registrations/<registration_id>", "registration", self.registration)
        self.app.add_url_rule("/events/<event_id>/attendance", "attendance", self.attendance)
        self.app.add_url_rule("/events/<event_id>/attendance/stream", "attendance_stream",
                              self.attendance_stream)

        self.app.add_url_rule("/scanner", "open_scanner", self.open_scanner, methods=["POST"])
        self.app.add_url_rule("/scanner", "scanner_state", self.scanner_state, methods=["GET"])
        self.app.add_url_rule("/scanner", "close_scanner", self.close_scanner, methods=["DELETE"])
        self.app.add_url_rule("/scanner/scan", "scan", self.scan, methods=["POST"])
        self.app.add_url_rule("/scanner/reset", "reset_scanner", self.reset_scanner, methods=["POST"])

    def _register_error_handlers(self) -> None:
        """Register error handlers for custom exceptions"""

        @self.app.errorhandler(CheckinScannerException)
        def handle_checkin_exception(e):
            logger.error("Unhandled application error: %s", e)
            return jsonify({"error": e.message, "code": e.error_code}), 500

    def register(self):
        """Create a registration; returns its id and QR token"""
        payload = request.get_json(silent=True) or {}
        result = self.runner.run(self.registration_service.register_for_event(
            payload.get("eventId", ""),
            payload.get("name", ""),
            payload.get("email", ""),
            payload.get("studentId", ""),
        ))
        if not result.ok:
            status = 400 if isinstance(result.error, DataValidationException) else 500
            return jsonify({"error": result.message}), status

        registration = self.runner.run(self.registration_service.get_registration(result.data))
        if not registration.ok:
            return jsonify({"error": registration.message}), 500
        return jsonify({"id": result.data, "qrCodeData": registration.data.qr_code_data}), 201

    def registration(self, registration_id: str):
        result = self.runner.run(self.registration_service.get_registration(registration_id))
        if not result.ok:
            status = 404 if result.error is None or isinstance(result.error, NotFoundError) else 500
            return jsonify({"error": result.message}), status
        return jsonify({"id": registration_id, **result.data.to_dict()})

    def attendance(self, event_id: str):
        """Attendance summary for one event"""
        result = self.runner.run(self.registration_service.list_registrations(event_id))
        if not result.ok:
            return jsonify({"error": result.message}), 500

        registrations = result.data
        attended = [r for r in registrations if r.has_attended]
        return jsonify({
            "eventId": event_id,
            "totalRegistered": len(registrations),
            "totalAttended": len(attended),
            "attendedRegistrationIds": [r.id for r in attended],
        })

    def attendance_stream(self, event_id: str):
        """
        Server-sent events carrying the live attended count

        A `: ping` comment is sent whenever STREAM_KEEPALIVE seconds pass
        without a change.
        """
        updates = _StreamReader(self.registration_service.observe_attendance(event_id),
                                self.config['STREAM_KEEPALIVE'])

        def generate():
            try:
                while True:
                    item = self.runner.run(updates.next())
                    if item is _DONE:
                        return
                    if item is _IDLE:
                        yield ": ping\n\n"
                        continue
                    body = {"attended": item.data} if item.ok else {"error": item.message}
                    yield f"data: {json.dumps(body)}\n\n"
            finally:
                self.runner.run(updates.close())

        return Response(generate(), mimetype="text/event-stream")

    def _current_scanner(self) -> Optional[ScanSessionController]:
        self._evict_idle()
        scanner_id = session.get("scanner_id")
        with self._scanners_lock:
            controller = self._scanners.get(scanner_id)
            if controller is not None:
                self._last_used[scanner_id] = self.clock()
        return controller

    def _discard_scanner(self, scanner_id: Optional[str]) -> Optional[ScanSessionController]:
        with self._scanners_lock:
            self._last_used.pop(scanner_id, None)
            controller = self._scanners.pop(scanner_id, None)
        if controller is not None:
            self.runner.call(controller.close)
        return controller

    def _evict_idle(self) -> None:
        """Close scan sessions whose browser has not been seen for SCANNER_IDLE_TIMEOUT seconds"""
        cutoff = self.clock() - self.config['SCANNER_IDLE_TIMEOUT']
        with self._scanners_lock:
            idle = [scanner_id for scanner_id, used in self._last_used.items() if used < cutoff]
        for scanner_id in idle:
            if self._discard_scanner(scanner_id) is not None:
                logger.info("Evicted idle scan session %s", scanner_id)

    def _no_scanner(self):
        return jsonify({"error": "No scanner session open"}), 404

    def open_scanner(self):
        """Scanner screen entered: create (or reuse) this browser's scan session"""
        controller = self._current_scanner()
        if controller is None:
            scanner_id = uuid.uuid4().hex
            controller = ScanSessionController(self.validator, self.committer)
            with self._scanners_lock:
                self._scanners[scanner_id] = controller
                self._last_used[scanner_id] = self.clock()
            session.permanent = True
            session["scanner_id"] = scanner_id
            logger.info("Opened scan session %s", scanner_id)
        return jsonify(controller.state.to_dict()), 201

    def scanner_state(self):
        controller = self._current_scanner()
        if controller is None:
            return self._no_scanner()
        return jsonify(controller.state.to_dict())

    def scan(self):
        """Process one scanned payload and return the settled session state"""
        controller = self._current_scanner()
        if controller is None:
            return self._no_scanner()

        payload = request.get_json(silent=True) or {}
        raw = payload.get("data")
        if not isinstance(raw, str):
            return jsonify({"error": "Field 'data' must be a string"}), 400

        state = self.runner.run(controller.on_token_scanned(raw))
        return jsonify(state.to_dict())

    def reset_scanner(self):
        controller = self._current_scanner()
        if controller is None:
            return self._no_scanner()
        state = self.runner.call(controller.reset_session)
        return jsonify(state.to_dict())

    def close_scanner(self):
        """Scanner screen left: tear the session down"""
        scanner_id = session.pop("scanner_id", None)
        if self._discard_scanner(scanner_id) is None:
            return self._no_scanner()
        logger.info("Closed scan session %s", scanner_id)
        return "", 204

    def shutdown(self) -> None:
        """Close every scan session, the store and the event loop"""
        for scanner_id in list(self._scanners):
            self._discard_scanner(scanner_id)
        self.runner.run(self.store.close())
        self.runner.stop()

    def run(self, host: str = '127.0.0.1', port: int = 5000, debug: bool = None) -> None:
        """
        Run the Flask application

        Args:
            host: Host address to bind to
            port: Port number to listen on
            debug: Debug mode (overrides config if provided)
        """
        if debug is not None:
            self.app.config['DEBUG'] = debug

        self.app.run(host=host, port=port, debug=self.app.config['DEBUG'], use_reloader=False)


def create_app(config: Optional[dict] = None, store: Optional[DocumentStore] = None) -> CheckinScannerApp:
    """
    Factory function to create and configure the application

    Args:
        config: Optional configuration dictionary
        store: Optional document store to use instead of STORE_BACKEND

    Returns:
        Configured CheckinScannerApp instance
    """
    return CheckinScannerApp(config, store)


def create_development_app() -> CheckinScannerApp:
    """Application with debug on and an in-memory store"""
    dev_config = {
        'DEBUG': True,
        'STORE_BACKEND': 'memory',
        'LOG_LEVEL': 'DEBUG',
    }
    return create_app(dev_config)


def create_production_app() -> CheckinScannerApp:
    """Application backed by Redis, secret key taken from FLASK_SECRET_KEY"""
    prod_config = {
        'DEBUG': False,
        'STORE_BACKEND': 'redis',
        'SECRET_KEY': os.environ['FLASK_SECRET_KEY'],
    }
    return create_app(prod_config)


def main() -> None:
    app = create_production_app() if os.environ.get('STORE_BACKEND') == 'redis' else create_development_app()
    try:
        app.run(host=os.environ.get('HOST', '127.0.0.1'), port=int(os.environ.get('PORT', 5000)))
    finally:
        app.shutdown()


if __name__ == "__main__":
    main()
