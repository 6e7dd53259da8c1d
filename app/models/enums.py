from enum import Enum


class BeneficiaryKind(str, Enum):
    TITULAR = "TITULAR"
    SPOUSE = "SPOUSE"
    CHILD = "CHILD"


class BeneficiaryStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class InvoiceLineStatus(str, Enum):
    PENDING = "PENDING"
    RECONCILED = "RECONCILED"


class ClosureStatus(str, Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"
