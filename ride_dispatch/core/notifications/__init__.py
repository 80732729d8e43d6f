from ride_dispatch.core.notifications.notifier import DriverNotifier

__all__ = ["DriverNotifier"]
