"""Market middleware — resolves the storefront (US / BR) for every request.

Sets g.market. Route handlers read the market from g instead of
re-resolving it, so one request always sees one market.
"""

from flask import g, request

from scanmyscale.markets import resolve_market


def attach_market():
    """Before-request hook. Skips static files."""
    if request.path.startswith("/static/"):
        return
    g.market = resolve_market(request)


def init_market_middleware(app):
    """Register the market resolver as a before_request hook."""
    app.before_request(attach_market)
