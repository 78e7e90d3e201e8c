"""
Plot components for the live pulse monitor.
"""

from typing import Optional, Sequence

import plotly.graph_objects as go  # type: ignore

SPO2_NORMAL = 95
SPO2_LOW = 90

SPO2_GREEN = "#28a745"
SPO2_AMBER = "#ffc107"
SPO2_RED = "#dc3545"
IDLE_GRAY = "#6c757d"


def spo2_color(spo2: Optional[int]) -> str:
    """Display colour for an SpO2 value: >=95 green, >=90 amber, else red."""
    if spo2 is None:
        return IDLE_GRAY
    if spo2 >= SPO2_NORMAL:
        return SPO2_GREEN
    if spo2 >= SPO2_LOW:
        return SPO2_AMBER
    return SPO2_RED


def create_signal_plot(
    signal: Sequence[float],
    rate_hz: int = 30,
    finger_detected: bool = False,
    title: str = "PPG Signal",
) -> go.Figure:
    """Create the pulse waveform plot for the most recent samples."""
    fig = go.Figure()

    if not signal:
        fig.add_annotation(
            x=0.5,
            y=0.5,
            text="No signal - place a fingertip over the camera",
            showarrow=False,
            xref="paper",
            yref="paper",
            font=dict(size=16, color="gray"),
        )
        fig.update_layout(
            title=title,
            xaxis_title="Time (seconds)",
            yaxis_title="Red intensity",
            height=300,
        )
        return fig

    # Newest sample at t=0, older samples to the left
    n = len(signal)
    timestamps = [(i - (n - 1)) / rate_hz for i in range(n)]

    fig.add_trace(
        go.Scatter(
            x=timestamps,
            y=list(signal),
            mode="lines",
            name="Red",
            line=dict(color="red" if finger_detected else "gray", width=1.5),
        )
    )

    fig.update_layout(
        title=title,
        xaxis_title="Time (seconds)",
        yaxis_title="Red intensity",
        showlegend=False,
        height=300,
        margin=dict(l=50, r=20, t=50, b=50),
    )
    return fig
