"""Normalization QC visualizations: raw vs TMM-normalized library distributions."""

from typing import Dict
import numpy as np
import plotly.graph_objects as go
import plotly.express as px
from plotly.subplots import make_subplots

from normalization import CountContainer, cpm, normalized_log_cpm


def _condition_colors(sample_conditions: Dict[str, str]) -> Dict[str, str]:
    colors = px.colors.qualitative.Set2
    conditions = sorted(set(sample_conditions.values()))
    return {c: colors[i % len(colors)] for i, c in enumerate(conditions)}


def create_library_size_barplot(
    container: CountContainer, sample_conditions: Dict[str, str]
) -> go.Figure:
    """
    Grouped bar plot of raw vs TMM-effective library size per sample.

    Args:
        container: Normalized count container
        sample_conditions: Dict mapping sample_name → condition

    Returns:
        Plotly Figure object
    """
    samples = sorted(container.lib_sizes.index, key=lambda s: (sample_conditions.get(s, ""), s))
    raw = container.lib_sizes.loc[samples]
    effective = container.effective_lib_sizes.loc[samples]

    fig = go.Figure()
    fig.add_trace(
        go.Bar(x=samples, y=raw.values, name="Raw library size", marker_color="lightgray")
    )
    fig.add_trace(
        go.Bar(
            x=samples,
            y=effective.values,
            name="TMM effective library size",
            marker_color="steelblue",
            customdata=container.norm_factors.loc[samples].values,
            hovertemplate="Sample: %{x}<br>Effective size: %{y:,.0f}"
            "<br>TMM factor: %{customdata:.3f}<extra></extra>",
        )
    )
    fig.add_hline(
        y=float(raw.mean()),
        line_dash="dash",
        line_color="red",
        annotation_text=f"Mean raw: {raw.mean():,.0f}",
        annotation_position="top right",
    )
    fig.update_layout(
        title="Library Size per Sample (raw vs TMM)",
        xaxis_title="Sample",
        yaxis_title="Total expression",
        barmode="group",
    )
    return fig


def create_normalization_comparison_plot(
    container: CountContainer, sample_conditions: Dict[str, str]
) -> go.Figure:
    """
    Side-by-side box plots of log-CPM before and after TMM normalization.

    Args:
        container: Normalized count container (genes × samples)
        sample_conditions: Dict mapping sample_name → condition

    Returns:
        Plotly Figure object
    """
    raw_log_cpm = cpm(container.counts, container.lib_sizes, log=True)
    norm_log_cpm = normalized_log_cpm(container)

    fig = make_subplots(
        rows=1, cols=2,
        subplot_titles=["Raw log₂ CPM", "TMM-normalized log₂ CPM"],
        shared_yaxes=True,
    )
    cond_color = _condition_colors(sample_conditions)
    samples = sorted(raw_log_cpm.columns, key=lambda s: (sample_conditions.get(s, ""), s))
    seen = set()

    for col, data in ((1, raw_log_cpm), (2, norm_log_cpm)):
        for sample in samples:
            cond = sample_conditions.get(sample, "Unknown")
            show = col == 1 and cond not in seen
            seen.add(cond)
            fig.add_trace(
                go.Box(
                    y=data[sample].values,
                    name=sample,
                    marker_color=cond_color.get(cond, "gray"),
                    legendgroup=cond,
                    legendgrouptitle_text=cond if show else None,
                    showlegend=show,
                    boxpoints=False,
                    hovertemplate="Sample: " + sample + "<br>log₂ CPM: %{y:.2f}<extra></extra>",
                ),
                row=1, col=col,
            )

    medians = norm_log_cpm.median(axis=0)
    fig.update_layout(
        title=f"Normalization Comparison (median spread after TMM: {np.ptp(medians.values):.2f})",
        height=500,
        showlegend=True,
    )
    return fig
