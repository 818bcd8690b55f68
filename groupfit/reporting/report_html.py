from __future__ import annotations
import os
import pandas as pd
from jinja2 import Template


HTML_TEMPLATE = """
<!doctype html>
<html>
<head>
  <meta charset="utf-8"/>
  <title>Multi-Group Fit Report</title>
  <style>
    body { font-family: Arial, sans-serif; margin: 24px; line-height: 1.35; }
    h1 { margin-bottom: 6px; }
    h2 { margin-top: 18px; margin-bottom: 8px; }
    .muted { color: #555; }
    .box { background: #fafafa; border: 1px solid #eee; padding: 12px; border-radius: 10px; }
    table { border-collapse: collapse; width: 100%; margin: 10px 0; }
    th, td { border: 1px solid #ddd; padding: 8px; font-size: 13px; }
    th { background: #f5f5f5; text-align: left; }
    .ok { background: #e8f5e9; border: 1px solid #c8e6c9; padding: 10px; border-radius: 8px; }
    .warn { background: #fff3cd; border: 1px solid #ffeeba; padding: 10px; border-radius: 8px; }
    .bad { background: #fdecea; border: 1px solid #f5c2c7; padding: 10px; border-radius: 8px; }
    code { background: #f2f2f2; padding: 2px 5px; border-radius: 4px; }
    pre { background: #f2f2f2; padding: 8px; border-radius: 6px; }
  </style>
</head>
<body>

<h1>Multi-Group Fit Report</h1>

<div class="box">
  <p><b>Run tag:</b> {{ tag }}</p>
  <p><b>Engine:</b> {{ engine }}</p>
  <p><b>Groups fitted:</b> {{ n_ok }} of {{ n_groups }}</p>
  <p><b>Model:</b></p>
  <pre>{{ model_syntax }}</pre>
</div>

{% if group_fit_html %}
<h2>Fit by group</h2>
{{ group_fit_html }}
{% endif %}

{% if invariance_html %}
<h2>Measurement invariance ({{ group_col }})</h2>
{{ verdict_box }}
<p class="muted"><b>Reason:</b> {{ verdict_reason }}</p>
{{ invariance_html }}
{% endif %}

{% if failures_html %}
<h2>Failed fits</h2>
<p class="muted">These groups or levels produced no fit statistics and are excluded from the tables above.</p>
{{ failures_html }}
{% endif %}

<h2>Notes</h2>
<ul>
  <li>Invariance is judged after fitting by comparing successive nested models (<code>delta_cfi</code>); no model is skipped because an earlier step failed a cut-off.</li>
  <li>The first level has no delta by construction.</li>
</ul>

</body>
</html>
"""


def _verdict_box(verdict: str) -> str:
    if verdict == "COMPARABLE":
        return '<div class="ok"><b>✅ Comparable</b></div>'
    if verdict == "CAUTION":
        return '<div class="warn"><b>⚠️ Use caution</b></div>'
    return '<div class="bad"><b>❌ Not comparable</b></div>'


def to_html(df: pd.DataFrame | None, max_rows: int = 50) -> str | None:
    if df is None or df.empty:
        return None
    return df.head(max_rows).to_html(index=False, na_rep="")


def write_report_html(
    out_path: str,
    tag: str,
    engine: str,
    model_syntax: str,
    n_groups: int,
    n_ok: int,
    group_fit_df: pd.DataFrame | None,
    invariance_df: pd.DataFrame | None,
    failures_df: pd.DataFrame | None,
    verdict: dict | None,
    group_col: str | None = None,
) -> None:
    """Tables are expected to be formatted already (see reporting.formatting)."""
    tmpl = Template(HTML_TEMPLATE)

    html = tmpl.render(
        tag=tag,
        engine=engine,
        model_syntax=model_syntax,
        n_groups=n_groups,
        n_ok=n_ok,
        group_col=group_col or "None",
        group_fit_html=to_html(group_fit_df),
        invariance_html=to_html(invariance_df),
        verdict_box=_verdict_box(verdict["verdict"]) if verdict else "",
        verdict_reason=verdict["reason"] if verdict else "",
        failures_html=to_html(failures_df),
    )

    os.makedirs(os.path.dirname(out_path) or ".", exist_ok=True)
    with open(out_path, "w", encoding="utf-8") as f:
        f.write(html)
