import collections
import logging
import threading
import time
from pathlib import Path
from typing import Optional

import dash
import pandas as pd
from dash import dcc, html, Input, Output
from flask import send_file

from prodcons.config import RunConfig
from prodcons.core import trace
from prodcons.core.kernel import ProducerConsumerRun
from prodcons.data.database import SqlLogger
from prodcons.viz.figures import blocking_figure, guard_figure, occupancy_figure, relative_time

logger = logging.getLogger("Dashboard")

# Keep the last 200 log / trace lines in memory for the live panel
log_capture = collections.deque(maxlen=200)


class DashLogHandler(logging.Handler):
    def emit(self, record):
        log_capture.append(f"[{time.time():.4f}] {record.levelname:<8} | {record.threadName:<15} | {self.format(record)}")


def captured_os_trace(entry: str):
    print(entry)
    log_capture.append(entry)


class DashboardController:
    """Owns the current run and its telemetry store. One run at a time."""

    def __init__(self, config: RunConfig):
        self.config = config
        self.run: Optional[ProducerConsumerRun] = None
        self.telemetry: Optional[SqlLogger] = None
        self.error: Optional[str] = None
        self._lock = threading.Lock()
        # Set under _lock from the click until the supervisor thread finishes
        self._active = False

    @property
    def running(self) -> bool:
        return self._active

    def start(self):
        with self._lock:
            if self.running:
                return
            self.error = None
            self.telemetry = SqlLogger(self.config.telemetry_path or "prodcons_telemetry.sqlite3")
            self.telemetry.start()
            self.run = ProducerConsumerRun(self.config, telemetry=self.telemetry)
            self._active = True
            threading.Thread(target=self._run_in_background, args=(self.run, self.telemetry),
                             name="RunSupervisor", daemon=True).start()

    def _run_in_background(self, run: ProducerConsumerRun, telemetry: SqlLogger):
        try:
            report = run.run()
            logger.info("Run finished: produced=%d consumed=%d occupancy=%d",
                        report.produced, report.consumed, report.occupancy)
        except Exception as e:
            self.error = str(e)
            logger.exception("Run failed")
        finally:
            telemetry.stop()
            with self._lock:
                self._active = False

    def stop(self):
        with self._lock:
            if self._active and self.run is not None:
                self.run.stop()


CONTROLLER = DashboardController(RunConfig())

app = dash.Dash(__name__, title="Bounded Buffer Monitor")

panel = {"width": "49%", "display": "inline-block", "verticalAlign": "top",
         "border": "1px solid #ddd", "padding": "5px", "borderRadius": "5px"}
console = {"height": "300px", "overflowY": "scroll", "backgroundColor": "#1e1e1e", "color": "#00ff00",
           "fontFamily": "monospace", "padding": "10px", "fontSize": "12px", "borderRadius": "5px"}

app.layout = html.Div([
    html.H1("Produtor / Consumidor: Bounded Buffer Monitor"),

    html.Div([
        html.Button("Start Run", id="btn-start", n_clicks=0),
        html.Button("Stop Run", id="btn-stop", n_clicks=0),
        html.A(html.Button("Download Audit Log"), href="/download/log", target="_blank", style={"marginLeft": "10px"}),
        html.Div(id="status-display", style={"display": "inline-block", "marginLeft": "20px"})
    ], style={"marginBottom": "20px"}),

    html.Div([
        html.Div([html.H3("1. Buffer Occupancy"), dcc.Graph(id="occupancy-graph")],
                 style={**panel, "marginRight": "1%"}),
        html.Div([html.H3("2. Guard Contention"), dcc.Graph(id="guard-graph")], style=panel),
    ], style={"marginBottom": "20px"}),

    html.Div([
        html.Div([html.H3("3. Time Blocked per Call"), dcc.Graph(id="blocking-graph")],
                 style={**panel, "marginRight": "1%"}),
        html.Div([html.H3("4. Audit Log"), html.Div(id="audit-display", style=console)], style=panel),
    ], style={"marginBottom": "20px"}),

    html.Div([html.H3("System Logs (Live OS Trace)"), html.Div(id="log-display", style=console)]),

    dcc.Interval(id="poll-interval", interval=1000, n_intervals=0),
    dcc.Interval(id="log-interval", interval=500, n_intervals=0),
])

server = app.server


@server.route("/download/log")
def download_log():
    path = Path(CONTROLLER.config.log_path).resolve()
    if not path.exists():
        return f"{path.name} not found", 404
    return send_file(path, as_attachment=True)


def tail(path: str, lines: int = 100) -> list[str]:
    try:
        with open(path, encoding="utf-8") as fh:
            return list(collections.deque(fh, maxlen=lines))
    except OSError:
        return []


@app.callback(
    [Output("log-display", "children"), Output("audit-display", "children")],
    [Input("log-interval", "n_intervals")]
)
def update_logs(n):
    logs = [html.Div(line) for line in reversed(list(log_capture))]
    audit = [html.Div(line.rstrip("\n")) for line in reversed(tail(CONTROLLER.config.log_path))]
    return logs, audit


@app.callback(
    [Output("status-display", "children"),
     Output("occupancy-graph", "figure"),
     Output("guard-graph", "figure"),
     Output("blocking-graph", "figure")],
    [Input("poll-interval", "n_intervals"),
     Input("btn-start", "n_clicks"),
     Input("btn-stop", "n_clicks")]
)
def update_dashboard(n, start_clicks, stop_clicks):
    triggered = dash.callback_context.triggered
    if triggered:
        button_id = triggered[0]["prop_id"].split(".")[0]
        if button_id == "btn-start":
            CONTROLLER.start()
        elif button_id == "btn-stop":
            CONTROLLER.stop()

    capacity = CONTROLLER.config.capacity
    telemetry = CONTROLLER.telemetry
    if telemetry is None:
        empty = relative_time(pd.DataFrame(columns=["subsystem", "ts_mono"]), 0)
        return "Status: Idle", occupancy_figure(empty, capacity), guard_figure(empty), blocking_figure(empty)

    ops_df = telemetry.read_frame("operations")
    locks_df = telemetry.read_frame("locks")
    ticks_df = telemetry.read_frame("ticks")
    start_mono = min((df["ts_mono"].min() for df in (ops_df, locks_df, ticks_df) if not df.empty), default=0.0)

    status = "Running" if CONTROLLER.running else "Stopped"
    if CONTROLLER.error:
        status = f"Failed: {CONTROLLER.error}"
    occupancy = int(ops_df["occupancy"].iloc[-1]) if not ops_df.empty else 0
    return (
        f"Status: {status} | Run ID: {telemetry.run_id} | Occupancy {occupancy}/{capacity}",
        occupancy_figure(relative_time(ops_df, start_mono), capacity),
        guard_figure(relative_time(locks_df, start_mono)),
        blocking_figure(relative_time(ticks_df, start_mono)),
    )


def run_server(config: Optional[RunConfig] = None):
    if config is not None:
        CONTROLLER.config = config
    handler = DashLogHandler()
    handler.setFormatter(logging.Formatter("%(message)s"))
    logging.getLogger().addHandler(handler)
    trace.enable(captured_os_trace)
    app.run(debug=True, use_reloader=False)


if __name__ == "__main__":
    run_server()
