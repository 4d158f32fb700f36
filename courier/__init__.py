"""Courier: device presence, license activation and package delivery.

Devices hold a WebSocket open to the hub; operators bind license keys to
devices and push content packages to them, either directly over the socket
or as short-lived download links.

Quickstart::

    python -m courier.server
    # or
    uvicorn courier.server:app --host 0.0.0.0 --port 3000
"""

__version__ = "1.0.0"
