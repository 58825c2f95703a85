"""
API module: aiohttp handlers for proxy purchase, activation and payments.

The application itself is assembled in http_server.create_app().
"""
