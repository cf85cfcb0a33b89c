"""
Domain exceptions for the SMC analysis and backtesting core
"""
from typing import Any, Dict, Optional


class SMCError(Exception):
    """Base exception for all smclab errors"""
    message = "An unexpected error occurred"

    def __init__(self, message: Optional[str] = None, details: Any = None):
        self.message = message or self.__class__.message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'error': self.__class__.__name__,
            'message': self.message,
            'details': self.details
        }


class ValidationError(SMCError):
    """Raised when candle data or optimizer input is malformed"""
    message = "Invalid input"


class ConfigurationError(SMCError):
    """Raised when settings are unknown, mistyped or out of range"""
    message = "Configuration error"


class OptimizationError(SMCError):
    """Raised when an optimization run cannot produce any result"""
    message = "Optimization failed"
