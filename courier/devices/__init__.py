"""Device side of Courier.

  - Presence: canonical device records with a grace period on disconnect
  - Channel: room/target addressed delivery over live sockets
  - Panels: operator panels known by socket or heartbeat
  - WebSocket: the device and panel socket protocol
"""
