class SmartMarkError(Exception):
    pass

class NoActiveDocument(SmartMarkError):
    def __init__(self, message: str = 'no active document'):
        super().__init__(message)

class InvalidWriterState(SmartMarkError):
    pass

class WriterAlreadyOpen(InvalidWriterState):
    pass

class TransportCancelled(SmartMarkError):
    pass

class TransportFailed(SmartMarkError):
    pass
