from .dao import Database, EnrollmentRecord, EnrollmentStore

__all__ = ["Database", "EnrollmentRecord", "EnrollmentStore"]
