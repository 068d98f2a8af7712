"""
HTML email templates for Lawnly.

Every public function returns a complete HTML string ready for sending via
the ``send_email`` helper in ``notifications.py``.

Design tokens:
  - Primary accent: #15803D (green)
  - Background:     #f7faf7
  - Card:           #ffffff
  - Text dark:      #111827
  - Text muted:     #4b5563 / #6b7280

All styles are inlined for email-client compatibility.  No external
resources (fonts, images, scripts) are referenced.
"""

from html import escape as _esc


# ---------------------------------------------------------------------------
# Shared layout helpers
# ---------------------------------------------------------------------------

def _header():
    return (
        '<div style="text-align:center;margin-bottom:30px;">'
        '<h1 style="color:#15803D;font-size:28px;margin:0;font-family:Arial,sans-serif;font-weight:700;">Lawnly</h1>'
        '<p style="color:#6b7280;margin:5px 0 0;font-size:14px;">Lawn mowing, sorted</p>'
        '</div>'
    )


def _footer():
    return (
        '<div style="text-align:center;margin-top:30px;padding-top:20px;border-top:1px solid #e5e7eb;color:#9ca3af;font-size:12px;line-height:1.6;">'
        '<p style="margin:0 0 4px;">Lawnly &middot; support@lawnly.com.au</p>'
        '<p style="margin:0;">Payments are held securely until your job is verified.</p>'
        '</div>'
    )


def _wrap(body_html):
    """Wrap inner content in the common email shell."""
    return (
        '<!DOCTYPE html>'
        '<html lang="en"><head><meta charset="utf-8">'
        '<meta name="viewport" content="width=device-width,initial-scale=1.0">'
        '<title>Lawnly</title></head>'
        '<body style="margin:0;padding:0;background-color:#f3f4f6;">'
        '<div style="font-family:Arial,sans-serif;max-width:600px;margin:0 auto;background:#f7faf7;padding:40px 20px;">'
        + _header()
        + '<div style="background:#ffffff;border-radius:12px;padding:30px;box-shadow:0 1px 3px rgba(0,0,0,0.1);">'
        + body_html
        + '</div>'
        + _footer()
        + '</div></body></html>'
    )


def _detail_table(rows):
    """Detail box. *rows* is a list of (label, value) tuples; the last is emphasised."""
    inner = ''
    for i, (label, value) in enumerate(rows):
        last = i == len(rows) - 1
        inner += (
            '<tr>'
            '<td style="padding:8px 0;color:#6b7280;font-size:14px;">{label}</td>'
            '<td style="padding:8px 0;color:{color};font-size:{size};font-weight:600;text-align:right;">{value}</td>'
            '</tr>'
        ).format(label=_esc(str(label)), value=_esc(str(value)),
                 color='#15803D' if last else '#111827', size='18px' if last else '14px')
    return (
        '<div style="background:#F0FDF4;border:1px solid #BBF7D0;border-radius:8px;padding:20px;margin:20px 0;">'
        '<table style="width:100%;border-collapse:collapse;">'
        + inner
        + '</table></div>'
    )


def _button(url, label):
    return (
        '<div style="text-align:center;margin:28px 0 12px;">'
        '<a href="{url}" style="display:inline-block;background:#15803D;color:#ffffff;'
        'text-decoration:none;padding:14px 36px;border-radius:8px;font-size:16px;'
        'font-weight:600;">{label}</a></div>'
    ).format(url=_esc(str(url)), label=_esc(str(label)))


def _paragraph(text):
    return '<p style="color:#4b5563;line-height:1.6;">{}</p>'.format(_esc(str(text)))


def _money(value):
    try:
        return '${:.2f}'.format(float(value))
    except (TypeError, ValueError):
        return '$0.00'


def _greeting(name):
    return _paragraph('Hi {},'.format(name or 'there'))


# ---------------------------------------------------------------------------
# Generic booking update
# ---------------------------------------------------------------------------

def booking_update_html(name, title, message, booking_id, url=None, rows=None):
    body = '<h2 style="color:#111827;margin:0 0 12px;font-size:22px;">{}</h2>'.format(_esc(title))
    body += _greeting(name) + _paragraph(message)
    detail = [('Booking', '#{}'.format(str(booking_id)[:8]))] + list(rows or [])
    body += _detail_table(detail)
    if url:
        body += _button(url, 'View booking')
    return _wrap(body)


# ---------------------------------------------------------------------------
# Price change after address verification
# ---------------------------------------------------------------------------

def price_change_html(name, booking_id, original_price, new_price, approve_by, url):
    body = '<h2 style="color:#111827;margin:0 0 12px;font-size:22px;">Your quote has changed</h2>'
    body += _greeting(name)
    body += _paragraph(
        'We measured your lawn and the price for this job has gone up. '
        'Please approve the new price before {} or the booking will be cancelled.'.format(approve_by)
    )
    body += _detail_table([
        ('Booking', '#{}'.format(str(booking_id)[:8])),
        ('Original quote', _money(original_price)),
        ('New price (inc. GST)', _money(new_price)),
    ])
    body += _button(url, 'Review new price')
    return _wrap(body)


# ---------------------------------------------------------------------------
# Job completed, review window open
# ---------------------------------------------------------------------------

def job_completed_html(name, booking_id, total, review_hours, url):
    body = '<h2 style="color:#111827;margin:0 0 12px;font-size:22px;">Your lawn is done</h2>'
    body += _greeting(name)
    body += _paragraph(
        'Your contractor has marked the job complete and uploaded before and after photos. '
        'You have {} hours to approve the job or raise an issue. After that the payment is '
        'released to your contractor automatically.'.format(review_hours)
    )
    body += _detail_table([
        ('Booking', '#{}'.format(str(booking_id)[:8])),
        ('Amount held', _money(total)),
    ])
    body += _button(url, 'Review photos')
    return _wrap(body)


# ---------------------------------------------------------------------------
# Payout released
# ---------------------------------------------------------------------------

def payout_released_html(name, booking_id, amount, automatic):
    how = 'the review window closed' if automatic else 'the customer approved the job'
    body = '<h2 style="color:#111827;margin:0 0 12px;font-size:22px;">Payout released</h2>'
    body += _greeting(name)
    body += _paragraph('Your payout is on its way because {}.'.format(how))
    body += _detail_table([
        ('Booking', '#{}'.format(str(booking_id)[:8])),
        ('Payout', _money(amount)),
    ])
    return _wrap(body)


# ---------------------------------------------------------------------------
# Disputes
# ---------------------------------------------------------------------------

def dispute_opened_html(name, booking_id, reason, post_payment):
    held = ('Your payout has already been released and is not affected while we review.'
            if post_payment else 'Your payout is on hold while we review.')
    body = '<h2 style="color:#111827;margin:0 0 12px;font-size:22px;">A customer raised an issue</h2>'
    body += _greeting(name)
    body += _paragraph('The customer reported a problem with this job. ' + held)
    body += _detail_table([
        ('Booking', '#{}'.format(str(booking_id)[:8])),
        ('Reason', reason),
    ])
    return _wrap(body)


def dispute_resolved_html(name, booking_id, resolution, refund_amount):
    labels = {
        'full_refund': 'Full refund',
        'partial_refund': 'Partial refund',
        'no_refund': 'No refund',
    }
    body = '<h2 style="color:#111827;margin:0 0 12px;font-size:22px;">Dispute resolved</h2>'
    body += _greeting(name)
    body += _paragraph('Our team has reviewed the issue on this booking.')
    body += _detail_table([
        ('Booking', '#{}'.format(str(booking_id)[:8])),
        ('Outcome', labels.get(resolution, resolution)),
        ('Refund', _money(refund_amount)),
    ])
    return _wrap(body)


# ---------------------------------------------------------------------------
# Contractor tiers
# ---------------------------------------------------------------------------

TIER_TITLES = {
    'standard': 'Verified Contractor',
    'premium': 'Premium Contractor',
}


def tier_promoted_html(name, tier):
    perks = {
        'standard': ['You can now hold up to 10 active jobs',
                     'No maximum job value'],
        'premium': ['No job restrictions',
                    'Priority in future features'],
    }
    title = TIER_TITLES.get(tier, tier.capitalize())
    body = '<h2 style="color:#111827;margin:0 0 12px;font-size:22px;">Congratulations!</h2>'
    body += _greeting(name)
    body += _paragraph('You have been promoted to {} status.'.format(title))
    body += _detail_table([(perk, 'Yes') for perk in perks.get(tier, [])] + [('New tier', title)])
    body += _paragraph('Keep up the great work!')
    return _wrap(body)
