from .line import LineNotifier, format_error_message, format_message

__all__ = [
    "LineNotifier",
    "format_error_message",
    "format_message",
]
