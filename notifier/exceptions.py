# notifier/exceptions.py

class NotifierError(Exception):
    """Base class for notification relay errors."""
    pass

class DeserializationError(NotifierError):
    """Raised when an inbound payload cannot be turned into the expected model."""
    pass

class SerializationError(NotifierError):
    """Raised when an inbound payload cannot be rendered back to text."""
    pass

class DeliveryError(NotifierError):
    """Raised when the SMTP transport fails to deliver a message."""
    pass
