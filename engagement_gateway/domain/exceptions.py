"""Domain-specific exceptions"""


class DomainException(Exception):
    """Base exception for domain layer"""

    status_code = 400
    code = "domain_error"
    default_message = "Request could not be processed"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class PermissionDeniedError(DomainException):
    """Caller is not a party to the contract, or acts in the wrong role"""

    status_code = 403
    code = "permission_denied"
    default_message = "You are not allowed to act on this contract"


class InvalidStateError(DomainException):
    """Operation not valid for the current lifecycle state"""

    status_code = 409
    code = "invalid_state"
    default_message = "Operation not allowed in the current state"


class ConcurrentModificationError(InvalidStateError):
    """Another request wrote the same record since it was read"""

    code = "concurrent_modification"
    default_message = "The record was modified concurrently, please retry"


class NotFoundError(DomainException):
    status_code = 404
    code = "not_found"
    default_message = "Resource not found"


class ContractNotFoundError(NotFoundError):
    code = "contract_not_found"
    default_message = "Contract not found"


class ScheduleNotFoundError(NotFoundError):
    code = "schedule_not_found"
    default_message = "Payment schedule not found"


class InstallmentNotFoundError(NotFoundError):
    code = "installment_not_found"
    default_message = "Installment not found or not payable"


class UserNotFoundError(NotFoundError):
    code = "user_not_found"
    default_message = "User not found"


class NegotiationNotFoundError(NotFoundError):
    code = "negotiation_not_found"
    default_message = "Accepted negotiation not found"


class DuplicateError(DomainException):
    status_code = 409
    code = "duplicate"
    default_message = "Resource already exists"


class DuplicateContractError(DuplicateError):
    code = "duplicate_contract"
    default_message = "A contract already exists for this negotiation"


class DuplicateScheduleError(DuplicateError):
    code = "duplicate_schedule"
    default_message = "A payment schedule already exists for this contract"


class InvalidTermsError(DomainException):
    """Payment terms are malformed"""

    status_code = 422
    code = "invalid_terms"
    default_message = "Invalid payment terms"


class AmountMismatchError(DomainException):
    """Payment amount differs from the installment amount"""

    status_code = 422
    code = "amount_mismatch"
    default_message = "Payment amount does not match the installment amount"


class VerificationFailedError(DomainException):
    """OTP mismatch or expired handle"""

    status_code = 400
    code = "verification_failed"
    default_message = "Verification code is invalid or has expired"


class CollaboratorUnavailableError(DomainException):
    """External service needed to complete the request is unreachable"""

    status_code = 503
    code = "collaborator_unavailable"
    default_message = "A required service is temporarily unavailable"


class StorageUnavailableError(DomainException):
    """Backing store failed; safe to retry"""

    status_code = 503
    code = "storage_unavailable"
    default_message = "Storage is temporarily unavailable, please retry"
