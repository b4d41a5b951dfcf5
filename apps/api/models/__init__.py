"""Models package."""

from .user import User
from .credit_account import CreditAccount
from .credit_ledger import CreditEntryType, CreditLedger
from .design import Design
from .generated_image import GeneratedImage
