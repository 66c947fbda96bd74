# validators.py - request payload validation with field-keyed error messages
import re
from datetime import datetime, timezone

from extensions import db
from errors import ValidationError
from models import RESOURCE_TYPES, Therapist

_MISSING = object()
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_URL_RE = re.compile(r"^https?://[^\s/$.?#].[^\s]*$", re.IGNORECASE)


def parse_datetime(value):
    """Parse an ISO-8601 string into a naive UTC datetime; None when unparseable."""
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        raw = value.strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(raw)
        except ValueError:
            return None
    else:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def _label(field):
    return field.replace("_", " ")


class Validator:
    """Collects per-field errors, then raises them all at once from ``validate``.

    With ``partial=True`` absent fields are skipped (update semantics); a field
    sent as null or blank is cleaned to None unless it is required.
    """

    def __init__(self, data, partial=False):
        self.data = data if isinstance(data, dict) else {}
        self.partial = partial
        self.errors = {}
        self.cleaned = {}

    def add_error(self, field, message):
        self.errors.setdefault(field, []).append(message)

    def _take(self, field, required):
        if field not in self.data:
            if required and not self.partial:
                self.add_error(field, f"The {_label(field)} field is required.")
            return _MISSING
        value = self.data[field]
        if value is None or (isinstance(value, str) and not value.strip()):
            if required:
                self.add_error(field, f"The {_label(field)} field is required.")
            else:
                self.cleaned[field] = None
            return _MISSING
        return value

    # ---------------------------------------------------------------
    def string(self, field, required=False, max_length=None, min_length=None, choices=None):
        value = self._take(field, required)
        if value is _MISSING:
            return
        if not isinstance(value, str):
            self.add_error(field, f"The {_label(field)} field must be a string.")
            return
        value = value.strip()
        if max_length is not None and len(value) > max_length:
            self.add_error(field, f"The {_label(field)} field must not be greater than {max_length} characters.")
            return
        if min_length is not None and len(value) < min_length:
            self.add_error(field, f"The {_label(field)} field must be at least {min_length} characters.")
            return
        if choices is not None and value not in choices:
            self.add_error(field, f"The selected {_label(field)} is invalid.")
            return
        self.cleaned[field] = value

    def email(self, field, required=False, unique=None, ignore_id=None):
        """``unique`` is a model class whose ``email`` column must not already hold the value."""
        self.string(field, required=required, max_length=255)
        value = self.cleaned.get(field)
        if field in self.errors or value is None:
            return
        value = value.lower()
        if not _EMAIL_RE.match(value):
            self.cleaned.pop(field, None)
            self.add_error(field, f"The {_label(field)} field must be a valid email address.")
            return
        if unique is not None:
            q = db.session.query(unique).filter(unique.email == value)
            if ignore_id is not None:
                q = q.filter(unique.id != ignore_id)
            if q.first() is not None:
                self.cleaned.pop(field, None)
                self.add_error(field, f"The {_label(field)} has already been taken.")
                return
        self.cleaned[field] = value

    def url(self, field, required=False, max_length=500):
        self.string(field, required=required, max_length=max_length)
        value = self.cleaned.get(field)
        if value and not _URL_RE.match(value):
            self.cleaned.pop(field, None)
            self.add_error(field, f"The {_label(field)} field must be a valid URL.")

    def integer(self, field, required=False, min_value=None, max_value=None, exists=None):
        value = self._take(field, required)
        if value is _MISSING:
            return
        if isinstance(value, bool):
            value = None
        elif isinstance(value, str) and value.strip().lstrip("-").isdigit():
            value = int(value.strip())
        elif not isinstance(value, int):
            value = None
        if value is None:
            self.add_error(field, f"The {_label(field)} field must be an integer.")
            return
        if min_value is not None and value < min_value:
            self.add_error(field, f"The {_label(field)} field must be at least {min_value}.")
            return
        if max_value is not None and value > max_value:
            self.add_error(field, f"The {_label(field)} field must not be greater than {max_value}.")
            return
        if exists is not None and db.session.get(exists, value) is None:
            self.add_error(field, f"The selected {_label(field)} is invalid.")
            return
        self.cleaned[field] = value

    def boolean(self, field, required=False):
        value = self._take(field, required)
        if value is _MISSING:
            return
        if value in (True, 1, "1", "true", "True"):
            self.cleaned[field] = True
        elif value in (False, 0, "0", "false", "False"):
            self.cleaned[field] = False
        else:
            self.add_error(field, f"The {_label(field)} field must be true or false.")

    def datetime(self, field, required=False, not_before=None):
        value = self._take(field, required)
        if value is _MISSING:
            return
        parsed = parse_datetime(value)
        if parsed is None:
            self.add_error(field, f"The {_label(field)} field must be a valid date.")
            return
        if not_before is not None and parsed < not_before:
            self.add_error(
                field,
                f"The {_label(field)} field must be a date after or equal to {not_before.date().isoformat()}.",
            )
            return
        self.cleaned[field] = parsed

    def id_list(self, field, required=False, min_items=None, exists=None):
        value = self._take(field, required)
        if value is _MISSING:
            return
        if not isinstance(value, list) or any(isinstance(v, bool) or not isinstance(v, int) for v in value):
            self.add_error(field, f"The {_label(field)} field must be a list of ids.")
            return
        ids = list(dict.fromkeys(value))
        if min_items is not None and len(ids) < min_items:
            self.add_error(field, f"The {_label(field)} field must have at least {min_items} items.")
            return
        if exists is not None:
            found = {row.id for row in db.session.query(exists).filter(exists.id.in_(ids))}
            missing = [i for i in ids if i not in found]
            if missing:
                self.add_error(field, f"The selected {_label(field)} is invalid.")
                return
        self.cleaned[field] = ids

    def validate(self):
        if self.errors:
            raise ValidationError(self.errors)
        return self.cleaned


# -------------------------------------------------------------------
# Shared field rules (REST API and admin console)
# -------------------------------------------------------------------
def therapist_fields(v, ignore_id=None):
    v.string("name", required=True, max_length=255)
    v.string("phone_number", required=True, max_length=50)
    v.email("email", required=True, unique=Therapist, ignore_id=ignore_id)
    v.string("specialty", max_length=255)
    v.string("bio", max_length=2000)


def resource_fields(v):
    v.string("title", required=True, max_length=255)
    v.string("type", required=True, choices=RESOURCE_TYPES)
    v.url("url")
    v.string("description", max_length=2000)
    v.string("content")
    v.string("tags", max_length=500)
