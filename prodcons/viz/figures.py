import pandas as pd
import plotly.graph_objs as go

ROLE_COLORS = {"Produtor": "#1f77b4", "Consumidor": "#d62728", "Kernel": "#7f7f7f"}
MARGIN = dict(l=30, r=30, t=30, b=30)


def relative_time(df: pd.DataFrame, start_mono: float) -> pd.DataFrame:
    """Add a ts_rel column (seconds since run start)."""
    df = df.copy()
    if df.empty:
        df["ts_rel"] = pd.Series(dtype=float)
    elif start_mono > 0:
        df["ts_rel"] = df["ts_mono"] - start_mono
    else:
        df["ts_rel"] = df["ts_mono"]
    return df


def occupancy_figure(ops_df: pd.DataFrame, capacity: int) -> go.Figure:
    """Occupancy after every committed operation, with the capacity line."""
    fig = go.Figure()
    if not ops_df.empty:
        fig.add_trace(go.Scatter(x=ops_df["ts_rel"], y=ops_df["occupancy"], mode="lines+markers",
                                 name="Occupancy", line=dict(shape="hv"), fill="tozeroy"))
        fig.add_trace(go.Scatter(x=[ops_df["ts_rel"].min(), ops_df["ts_rel"].max()], y=[capacity, capacity],
                                 mode="lines", name="Capacity", line=dict(dash="dash", color="red")))
    fig.update_layout(margin=MARGIN, height=250, yaxis=dict(range=[0, capacity + 1]))
    return fig


def guard_figure(locks_df: pd.DataFrame) -> go.Figure:
    """Time spent waiting for and holding the buffer guard, per thread."""
    fig = go.Figure()
    for sub in locks_df["subsystem"].unique() if not locks_df.empty else []:
        df_sub = locks_df[locks_df["subsystem"] == sub]
        color = ROLE_COLORS.get(sub, "#333333")
        fig.add_trace(go.Scatter(x=df_sub["ts_rel"], y=df_sub["wait_ms"], mode="markers",
                                 name=f"{sub} wait", marker=dict(color=color)))
        fig.add_trace(go.Scatter(x=df_sub["ts_rel"], y=df_sub["held_ms"], mode="lines",
                                 name=f"{sub} held", line=dict(color=color, dash="dot")))
    fig.update_layout(margin=MARGIN, height=250, yaxis_title="ms")
    return fig


def blocking_figure(ticks_df: pd.DataFrame) -> go.Figure:
    """How long each produce/consume call blocked, per role."""
    fig = go.Figure()
    for sub in ticks_df["subsystem"].unique() if not ticks_df.empty else []:
        df_sub = ticks_df[ticks_df["subsystem"] == sub]
        fig.add_trace(go.Bar(x=df_sub["seq"], y=df_sub["wait_ms"], name=sub,
                             marker=dict(color=ROLE_COLORS.get(sub, "#333333"))))
    fig.update_layout(margin=MARGIN, height=250, barmode="group", xaxis_title="call", yaxis_title="ms")
    return fig
