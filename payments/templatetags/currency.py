from django import template

register = template.Library()


@register.filter
def rupees(value):
    """Format an amount in paise as INR with 2 decimal places."""
    try:
        return f"₹{int(value) / 100:,.2f}"
    except (TypeError, ValueError):
        return value
