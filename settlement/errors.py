class SettlementServiceError(Exception):
    pass


class InputError(SettlementServiceError):
    pass


class NoParticipantsError(SettlementServiceError):
    pass


class ConsistencyError(SettlementServiceError):
    pass


class PersistenceError(SettlementServiceError):
    pass


class EventNotFoundError(SettlementServiceError):
    pass


class TransferNotFoundError(SettlementServiceError):
    pass


class InvalidStateTransitionError(SettlementServiceError):
    pass


class PermissionDeniedError(SettlementServiceError):
    pass
