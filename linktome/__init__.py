"""
linktome - link-in-bio backend.

This package holds the request pipeline that decides, for every
inbound request, who is calling, what they may do, and whether they
may do it right now:

- auth: session tokens, refresh tokens, API keys, roles, permissions
- ratelimit: subscription tiers, fixed-window limiter, bot scoring
- gateway: routing and the dispatcher that runs every gate in order
- handlers: the endpoints the dispatcher invokes
"""

__version__ = "0.1.0"
