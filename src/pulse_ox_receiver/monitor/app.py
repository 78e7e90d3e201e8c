"""
Dash application for live pulse and oximeter monitoring.
"""

import asyncio
import logging
import threading
from concurrent.futures import Future
from typing import Any, Coroutine, Dict, Optional, Tuple

import dash  # type: ignore
from dash import dcc, html, Input, Output

from ..acquisition import PulseMonitor, PulseState
from ..connection import ConnectionManager, OximeterState
from ..decoders import ProtocolId
from .plots import create_signal_plot, spo2_color

logger = logging.getLogger(__name__)

PANEL_STYLE = {
    "border": "1px solid #ddd",
    "padding": "15px",
    "borderRadius": "5px",
    "flex": "1",
}
READING_STYLE = {"fontSize": "56px", "fontWeight": "bold", "margin": "10px 0"}


def pulse_status_text(state: PulseState) -> str:
    if state.error:
        return state.error
    if not state.is_reading:
        return "Stopped"
    if state.is_calibrating:
        return "Calibrating..."
    if not state.finger_detected:
        return "Place your fingertip over the camera"
    if state.bpm is None:
        return "Reading..."
    return "Finger detected"


def oximeter_status_text(state: OximeterState) -> str:
    if state.error:
        return state.error
    if state.is_connecting:
        return "Connecting..."
    if not state.is_connected:
        return "Disconnected"
    text = f"Connected: {state.device_name}"
    if state.protocol is not None:
        text += f" ({state.protocol.value})"
    if state.protocol is ProtocolId.HEURISTIC:
        text += " - approximate values"
    return text


def _button_style(color: str, disabled: bool) -> Dict[str, str]:
    return {
        "padding": "8px 16px",
        "backgroundColor": color,
        "color": "white",
        "border": "none",
        "borderRadius": "4px",
        "cursor": "pointer" if not disabled else "not-allowed",
        "opacity": "0.6" if disabled else "1.0",
    }


class MonitorApp:
    """Web view over both sensor pipelines.

    Both pipelines live on a dedicated background thread running its own
    asyncio event loop, so BLE callbacks and frame sampling never wait on the
    web server. The Dash interval callback only reads the latest immutable
    state snapshots; the buttons submit coroutines to the worker loop.

    Attributes:
        pulse: Optical pipeline (camera or mock frame source).
        oximeter: BLE oximeter connection manager.
        update_interval: UI refresh interval in milliseconds.
        app: Dash web application instance.
        _thread: Background thread running the worker event loop.
        _loop: Event loop owned by the worker thread.
    """

    def __init__(
        self,
        pulse: PulseMonitor,
        oximeter: ConnectionManager,
        update_rate: int = 10,
    ):
        self.pulse = pulse
        self.oximeter = oximeter
        self.update_interval = 1000 // update_rate  # Convert FPS to milliseconds

        self._thread: Optional[threading.Thread] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

        self.app = dash.Dash(__name__)
        self._setup_layout()
        self._setup_callbacks()

    def _setup_layout(self) -> None:
        self.app.layout = html.Div(
            [
                html.H1("Pulse Monitor", style={"textAlign": "center"}),
                html.Div(
                    [
                        # Optical heart-rate panel
                        html.Div(
                            [
                                html.H3("Heart Rate (camera)"),
                                html.Div(id="bpm-display", children="--", style=READING_STYLE),
                                html.Div(id="pulse-status", children="Stopped"),
                                html.Div(
                                    [
                                        html.Button(
                                            "▶️ Start",
                                            id="start-pulse-btn",
                                            n_clicks=0,
                                            style=_button_style("#28a745", False),
                                        ),
                                        html.Button(
                                            "⏹️ Stop",
                                            id="stop-pulse-btn",
                                            n_clicks=0,
                                            style=_button_style("#dc3545", True),
                                        ),
                                    ],
                                    style={"display": "flex", "gap": "10px", "margin": "10px 0"},
                                ),
                                dcc.Graph(id="signal-plot", config={"displayModeBar": False}),
                            ],
                            style=PANEL_STYLE,
                        ),
                        # BLE oximeter panel
                        html.Div(
                            [
                                html.H3("Pulse Oximeter (BLE)"),
                                html.Div(id="spo2-display", children="--", style=READING_STYLE),
                                html.Div(id="pulse-rate-display", children="Pulse rate: --"),
                                html.Div(id="oximeter-status", children="Disconnected"),
                                html.Div(
                                    [
                                        html.Button(
                                            "🔗 Connect",
                                            id="connect-btn",
                                            n_clicks=0,
                                            style=_button_style("#007bff", False),
                                        ),
                                        html.Button(
                                            "❌ Disconnect",
                                            id="disconnect-btn",
                                            n_clicks=0,
                                            style=_button_style("#6c757d", True),
                                        ),
                                    ],
                                    style={"display": "flex", "gap": "10px", "margin": "10px 0"},
                                ),
                            ],
                            style=PANEL_STYLE,
                        ),
                    ],
                    style={"margin": "20px", "display": "flex", "gap": "20px"},
                ),
                dcc.Interval(
                    id="interval-component",
                    interval=self.update_interval,  # in milliseconds
                    n_intervals=0,
                ),
                # Hidden divs to store states
                html.Div(id="pulse-command-store", style={"display": "none"}),
                html.Div(id="oximeter-command-store", style={"display": "none"}),
            ]
        )

    def _setup_callbacks(self) -> None:
        @self.app.callback(  # type: ignore
            [
                Output("bpm-display", "children"),
                Output("pulse-status", "children"),
                Output("signal-plot", "figure"),
                Output("start-pulse-btn", "disabled"),
                Output("stop-pulse-btn", "disabled"),
                Output("start-pulse-btn", "style"),
                Output("stop-pulse-btn", "style"),
                Output("spo2-display", "children"),
                Output("spo2-display", "style"),
                Output("pulse-rate-display", "children"),
                Output("oximeter-status", "children"),
                Output("connect-btn", "disabled"),
                Output("disconnect-btn", "disabled"),
                Output("connect-btn", "style"),
                Output("disconnect-btn", "style"),
            ],
            [Input("interval-component", "n_intervals")],
        )
        def update_view(n_intervals: int) -> Tuple[Any, ...]:
            return self.render(self.pulse.state, self.oximeter.state)

        @self.app.callback(  # type: ignore
            Output("pulse-command-store", "children"),
            [Input("start-pulse-btn", "n_clicks")],
            prevent_initial_call=True,
        )
        def start_pulse(n_clicks: int):  # type: ignore
            if n_clicks:
                self.submit(self.pulse.start())
                return "starting"
            return "idle"

        @self.app.callback(  # type: ignore
            Output("pulse-command-store", "children", allow_duplicate=True),
            [Input("stop-pulse-btn", "n_clicks")],
            prevent_initial_call=True,
        )
        def stop_pulse(n_clicks: int):  # type: ignore
            if n_clicks:
                self.submit(self.pulse.stop())
                return "stopping"
            return "idle"

        @self.app.callback(  # type: ignore
            Output("oximeter-command-store", "children"),
            [Input("connect-btn", "n_clicks")],
            prevent_initial_call=True,
        )
        def connect_oximeter(n_clicks: int):  # type: ignore
            if n_clicks:
                self.submit(self.oximeter.connect())
                return "connecting"
            return "idle"

        @self.app.callback(  # type: ignore
            Output("oximeter-command-store", "children", allow_duplicate=True),
            [Input("disconnect-btn", "n_clicks")],
            prevent_initial_call=True,
        )
        def disconnect_oximeter(n_clicks: int):  # type: ignore
            if n_clicks:
                self.submit(self.oximeter.disconnect())
                return "disconnecting"
            return "idle"

    def render(self, pulse: PulseState, oximeter: OximeterState) -> Tuple[Any, ...]:
        """Map both state snapshots onto the interval callback outputs."""
        bpm_text = str(pulse.bpm) if pulse.bpm is not None else "--"
        signal_fig = create_signal_plot(
            pulse.signal, self.pulse.config.rate_hz, pulse.finger_detected
        )
        pulse_running = pulse.is_reading

        spo2_text = f"{oximeter.spo2}%" if oximeter.spo2 is not None else "--"
        spo2_style = dict(READING_STYLE, color=spo2_color(oximeter.spo2))
        pr_text = (
            f"Pulse rate: {oximeter.pulse_rate} bpm"
            if oximeter.pulse_rate is not None
            else "Pulse rate: --"
        )
        busy = oximeter.is_connected or oximeter.is_connecting

        return (
            bpm_text,
            pulse_status_text(pulse),
            signal_fig,
            pulse_running,
            not pulse_running,
            _button_style("#28a745", pulse_running),
            _button_style("#dc3545", not pulse_running),
            spo2_text,
            spo2_style,
            pr_text,
            oximeter_status_text(oximeter),
            busy,
            not busy,
            _button_style("#007bff", busy),
            _button_style("#6c757d", not busy),
        )

    def submit(self, coro: Coroutine[Any, Any, Any]) -> "Future[Any]":
        """Schedule a pipeline coroutine on the worker loop."""
        if self._loop is None:
            coro.close()
            raise RuntimeError("Worker loop is not running")
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        future.add_done_callback(self._log_command_result)
        return future

    @staticmethod
    def _log_command_result(future: "Future[Any]") -> None:
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            # Failures are also published in the pipeline state
            logger.warning("⚠️ Command failed: %s", error)

    def _worker(self) -> None:
        loop = self._loop
        if loop is None:
            raise RuntimeError("Worker loop was not created")
        asyncio.set_event_loop(loop)
        try:
            loop.run_forever()
        finally:
            loop.close()

    def start_worker(self) -> None:
        """Start the background event loop thread. Idempotent."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._worker, daemon=True)
        self._thread.start()
        logger.info("✅ Worker loop started")

    def stop_worker(self, timeout: float = 5.0) -> None:
        """Release both pipelines and stop the worker thread."""
        loop, thread = self._loop, self._thread
        if loop is None or thread is None:
            return

        logger.info("🛑 Stopping pipelines...")
        for coro in (self.pulse.stop(), self.oximeter.disconnect()):
            future = asyncio.run_coroutine_threadsafe(coro, loop)
            try:
                future.result(timeout=timeout)
            except Exception as e:
                logger.warning("⚠️ Error during shutdown: %s", e)

        loop.call_soon_threadsafe(loop.stop)
        thread.join(timeout=timeout)
        if thread.is_alive():
            logger.warning("⚠️ Worker thread did not stop gracefully")
        self._loop = None
        self._thread = None

    def run(self, host: str = "127.0.0.1", port: int = 8050, debug: bool = False) -> None:
        """Start the worker loop and serve the dashboard until interrupted."""
        self.start_worker()
        try:
            self.app.run(host=host, port=port, debug=debug)
        finally:
            self.stop_worker()


def create_app(
    pulse: PulseMonitor, oximeter: ConnectionManager, **kwargs: int
) -> MonitorApp:
    """Factory function to create a monitor app.

    Args:
        pulse: Optical pipeline to drive.
        oximeter: Oximeter connection manager to drive.
        **kwargs: Additional arguments for MonitorApp

    Returns:
        MonitorApp instance
    """
    return MonitorApp(pulse=pulse, oximeter=oximeter, **kwargs)
