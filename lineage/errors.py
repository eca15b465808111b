"""
Error taxonomy for tree mutations.

Every failure the mutation core can report is one of the classes below. Each
carries a stable ``code`` (what API clients switch on), an HTTP status for the
blueprint error handler, and a localized message. Arabic is the display
language of the family tree; English is kept for logs and tooling.
"""
from __future__ import annotations
from typing import Any, Dict, Optional

DEFAULT_LANGUAGE = "ar"

MESSAGES: Dict[str, Dict[str, str]] = {
    "permission-denied": {
        "ar": "ليس لديك صلاحية مباشرة لتعديل هذا الملف. يمكنك إرسال اقتراح للمشرفين",
        "en": "You do not have permission to modify this profile. You can send a suggestion to the moderators.",
    },
    "version-conflict": {
        "ar": "تم تحديث البيانات من قبل مستخدم آخر. يرجى تحديث الصفحة والمحاولة مرة أخرى",
        "en": "The data was changed by another user. Refresh and try again.",
    },
    "resource-busy": {
        "ar": "عملية أخرى قيد التنفيذ على هذا الملف الشخصي. يرجى المحاولة بعد قليل",
        "en": "Another operation is in progress on this profile. Try again shortly.",
    },
    "validation-error": {
        "ar": "قيمة غير صالحة في الحقل \"{field}\"",
        "en": "Invalid value for field \"{field}\".",
    },
    "already-undone": {
        "ar": "تم التراجع عن هذا الإجراء بالفعل",
        "en": "This action has already been undone.",
    },
    "batch-too-large": {
        "ar": "الحد الأقصى {limit} عملية في الدفعة الواحدة. يرجى تقسيم التغييرات إلى دفعات أصغر",
        "en": "At most {limit} operations per batch. Split the changes into smaller batches.",
    },
    "not-found": {
        "ar": "السجل المطلوب غير موجود أو محذوف",
        "en": "The requested record does not exist or was deleted.",
    },
    "not-authenticated": {
        "ar": "يجب تسجيل الدخول لتنفيذ هذه العملية",
        "en": "You must be signed in to perform this operation.",
    },
    "profile-not-linked": {
        "ar": "لا يوجد ملف شخصي مرتبط بهذا الحساب",
        "en": "No profile is linked to this account.",
    },
}


class LineageError(Exception):
    code = "error"
    http_status = 500

    def __init__(self, detail: str | None = None, **details: Any):
        self.detail = detail
        self.details: Dict[str, Any] = details
        super().__init__(detail or self.code)

    def message(self, language: str | None = None) -> str:
        templates = MESSAGES.get(self.code, {})
        template = templates.get(language or DEFAULT_LANGUAGE) or templates.get(DEFAULT_LANGUAGE) or self.code
        return template.format(**self.details)

    def to_dict(self, language: str | None = None) -> Dict[str, Any]:
        out: Dict[str, Any] = {"error": self.code, "message": self.message(language)}
        if self.details:
            out["details"] = self.details
        if self.detail:
            out["detail"] = self.detail
        return out


class PermissionDenied(LineageError):
    code = "permission-denied"
    http_status = 403


class VersionConflict(LineageError):
    code = "version-conflict"
    http_status = 409

    def __init__(self, detail: str | None = None, *, record_id: Any = None,
                 expected: Optional[int] = None, actual: Optional[int] = None):
        super().__init__(detail, record_id=record_id, expected=expected, actual=actual)


class ResourceBusy(LineageError):
    code = "resource-busy"
    http_status = 423


class ValidationFailed(LineageError):
    code = "validation-error"
    http_status = 400

    def __init__(self, detail: str | None = None, *, field: str = "", op_index: Optional[int] = None):
        super().__init__(detail, field=field, op_index=op_index)


class AlreadyUndone(LineageError):
    code = "already-undone"
    http_status = 409


class BatchTooLarge(LineageError):
    code = "batch-too-large"
    http_status = 413

    def __init__(self, detail: str | None = None, *, limit: int, size: int):
        super().__init__(detail, limit=limit, size=size)


class NotFound(LineageError):
    code = "not-found"
    http_status = 404


class NotAuthenticated(LineageError):
    code = "not-authenticated"
    http_status = 401


class ProfileNotLinked(LineageError):
    code = "profile-not-linked"
    http_status = 403
