"""Models package."""

from .user import User
from .credit_ledger import CreditLedger
from .generation_job import GenerationJob
