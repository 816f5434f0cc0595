"""HTML email bodies.

Every interpolated value is HTML-escaped before substitution.
"""

from html import escape
from string import Template
from typing import Any

_LAYOUT = Template("""<!doctype html>
<html>
  <body style="font-family: Arial, Helvetica, sans-serif; color: #1a1a1a; line-height: 1.5;">
    <div style="max-width: 600px; margin: 0 auto; padding: 24px;">
      $content
    </div>
  </body>
</html>
""")

_ESIM_DELIVERY = Template("""
<h2>Your eSIM is ready</h2>
<p>Hello $first_name,</p>
<p>Thank you for your order $order_name. Here is everything you need to install your eSIM.</p>
<table cellpadding="6" style="border-collapse: collapse;">
  <tr><td><strong>ICCID</strong></td><td>$iccid</td></tr>
  <tr><td><strong>Activation code (LPA)</strong></td><td><code>$lpa_string</code></td></tr>
  <tr><td><strong>SM-DP+ address</strong></td><td>$smdp_address</td></tr>
  <tr><td><strong>Manual code</strong></td><td>$manual_code</td></tr>
  <tr><td><strong>APN</strong></td><td>$apn</td></tr>
</table>
<p>Install the eSIM before you travel and only enable it on arrival.</p>
""")

_TOP_UP_CONFIRMATION = Template("""
<h2>Your top-up has been applied</h2>
<p>Hello $first_name,</p>
<p>The data from order $order_name was added to your eSIM <strong>$iccid</strong>.</p>
<p>No new installation is needed.</p>
""")

_USAGE_ALERT = Template("""
<h2>You have used $percent_used% of your data</h2>
<p>Hello $first_name,</p>
<p>Your eSIM <strong>$iccid</strong> from order $order_name has $remaining left of $quota.</p>
<p>Top up before you run out to stay connected.</p>
""")

_ESCALATION = Template("""
<h2 style="color: #b00020;">$title</h2>
<p>$summary</p>
<table cellpadding="6" border="1" style="border-collapse: collapse; font-size: 13px;">
$rows
</table>
""")


def _render(template: Template, **values: Any) -> str:
    safe = {k: escape(str(v)) if v is not None else "-" for k, v in values.items()}
    return _LAYOUT.substitute(content=template.substitute(safe))


def format_bytes(value: int | None) -> str:
    """Human-readable data amount (decimal units, as providers sell them)."""
    if value is None:
        return "-"
    amount = float(value)
    for unit in ("B", "KB", "MB", "GB"):
        if abs(amount) < 1000 or unit == "GB":
            return f"{amount:.0f} {unit}" if unit == "B" else f"{amount:.2f} {unit}"
        amount /= 1000
    return f"{amount:.2f} GB"


def render_esim_delivery(
    first_name: str,
    order_name: str,
    iccid: str,
    lpa_string: str | None,
    smdp_address: str | None,
    manual_code: str | None,
    apn: str | None,
) -> str:
    return _render(
        _ESIM_DELIVERY,
        first_name=first_name or "there",
        order_name=order_name,
        iccid=iccid,
        lpa_string=lpa_string,
        smdp_address=smdp_address,
        manual_code=manual_code,
        apn=apn,
    )


def render_top_up_confirmation(first_name: str, order_name: str, iccid: str) -> str:
    return _render(
        _TOP_UP_CONFIRMATION,
        first_name=first_name or "there",
        order_name=order_name,
        iccid=iccid,
    )


def render_usage_alert(
    first_name: str,
    order_name: str,
    iccid: str,
    percent_used: int,
    remaining_bytes: int | None,
    quota_bytes: int | None,
) -> str:
    return _render(
        _USAGE_ALERT,
        first_name=first_name or "there",
        order_name=order_name,
        iccid=iccid,
        percent_used=percent_used,
        remaining=format_bytes(remaining_bytes),
        quota=format_bytes(quota_bytes),
    )


def render_escalation(title: str, summary: str, details: dict[str, Any]) -> str:
    """Operator email: a title, a one-line summary and a key/value table of context."""
    rows = "\n".join(
        f"<tr><td><strong>{escape(str(k))}</strong></td><td><pre style=\"margin: 0;\">"
        f"{escape(str(v)) if v is not None else '-'}</pre></td></tr>"
        for k, v in details.items()
    )
    content = _ESCALATION.substitute(title=escape(title), summary=escape(summary), rows=rows)
    return _LAYOUT.substitute(content=content)
