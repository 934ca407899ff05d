"""Service result wrapper returned by the pipeline operations."""

from typing import TypeVar, Generic, Optional

from capture_analysis.core.exceptions import PipelineException

T = TypeVar('T')


class ServiceResult(Generic[T]):
    """Standard service result wrapper with success/error handling."""

    def __init__(self, success: bool, data: Optional[T] = None, error: Optional[str] = None,
                 error_code: Optional[str] = None, exception: Optional[PipelineException] = None):
        self.success = success
        self.data = data
        self.error = error
        self.error_code = error_code
        self.exception = exception

    @classmethod
    def ok(cls, data: T) -> 'ServiceResult[T]':
        return cls(success=True, data=data)

    @classmethod
    def error(cls, error: str, error_code: Optional[str] = None) -> 'ServiceResult[T]':
        return cls(success=False, error=error, error_code=error_code)

    @classmethod
    def from_exception(cls, exc: PipelineException) -> 'ServiceResult[T]':
        return cls(success=False, error=exc.user_message, error_code=exc.error_code, exception=exc)

    def unwrap(self) -> T:
        """Get data, or raise the original pipeline exception."""
        if not self.success:
            if self.exception is not None:
                raise self.exception
            raise ValueError(self.error)
        return self.data

    def to_dict(self) -> dict:
        if self.success:
            return {"success": True, "data": self.data}
        return {"success": False, "error": self.error, "error_code": self.error_code}
