# casedispatch/core/dispatch/__init__.py
"""
Dispatch layer.

- ``dispatcher`` - ranked suggestions and auto-assignment
- ``notifications`` - notification requests for case transitions

Notification delivery is external; this package only builds requests and
hands them to a ``NotificationSink``.
"""
