# aevumlite.py
import copy
import json
import logging
import operator
import sys
import uuid
from enum import Enum
from functools import cmp_to_key, lru_cache
from typing import Any, Callable, Dict, Iterable, List, Optional

import structlog
from pydantic_settings import BaseSettings, SettingsConfigDict

# =========================
# Errors
# =========================
class AevumError(Exception):
    """Base class for aevumlite errors."""
    pass

class InvalidDocumentError(AevumError):
    """Raised when a document doesn't satisfy the collection schema."""
    def __init__(self, message: str, document: Any = None):
        super().__init__(message)
        self.document = document


# =========================
# Settings
# =========================
class EngineSettings(BaseSettings):
    """Engine configuration, read from AEVUM_* environment variables or .env."""

    model_config = SettingsConfigDict(
        env_prefix="AEVUM_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    log_level: str = "INFO"
    json_logs: Optional[bool] = None  # None: JSON unless stdout is a tty
    service: str = "aevumlite"
    assign_ids: bool = True

@lru_cache(maxsize=1)
def get_settings() -> EngineSettings:
    return EngineSettings()


# =========================
# Logging
# =========================
_SERVICE_NAME = "aevumlite"

def _add_service_metadata(logger, method_name: str, event_dict: dict) -> dict:
    event_dict.setdefault("service", _SERVICE_NAME)
    return event_dict

def configure_logging(level: Optional[str] = None, json_format: Optional[bool] = None,
                      service: Optional[str] = None) -> None:
    """Configure structlog for the engine.

    Arguments left as None are taken from EngineSettings. With json_format
    still None the renderer is JSON unless stdout is a tty.
    """
    global _SERVICE_NAME
    settings = get_settings()
    level = (level or settings.log_level).upper()
    if json_format is None:
        json_format = settings.json_logs
    if json_format is None:
        json_format = not sys.stdout.isatty()
    _SERVICE_NAME = service or settings.service

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        _add_service_metadata,
    ]
    if json_format:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )

def get_logger(name: Optional[str] = None):
    return structlog.get_logger(name)

def _apply_default_logging() -> None:
    """Install the settings log level unless the host already configured structlog."""
    if structlog.is_configured():
        return
    level = get_settings().log_level.upper()
    structlog.configure(wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level)))

_apply_default_logging()
log = get_logger(__name__)


# =========================
# Values
# =========================
def is_number(x) -> bool:
    # bool is an int subclass but never a JSON number
    return isinstance(x, (int, float)) and not isinstance(x, bool)

def values_equal(a, b) -> bool:
    """Structural equality over JSON values (object key order is irrelevant)."""
    if is_number(a) and is_number(b):
        return a == b
    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool) and a == b
    if isinstance(a, list) and isinstance(b, list):
        return len(a) == len(b) and all(values_equal(x, y) for x, y in zip(a, b))
    if isinstance(a, dict) and isinstance(b, dict):
        if a.keys() != b.keys():
            return False
        return all(values_equal(v, b[k]) for k, v in a.items())
    if type(a) is not type(b):
        return False
    return a == b

def get_field(doc, key: str):
    """Top-level field lookup; a missing key or non-object document reads as None."""
    if isinstance(doc, dict):
        return doc.get(key)
    return None

def generate_id() -> str:
    return str(uuid.uuid4())


# =========================
# Results
# =========================
class InsertOneResult:
    def __init__(self, inserted_id):
        self.inserted_id = inserted_id

class UpdateResult:
    def __init__(self, matched_count, upserted_id=None):
        self.matched_count = matched_count
        self.upserted_id = upserted_id

class DeleteResult:
    def __init__(self, deleted_count):
        self.deleted_count = deleted_count


# =========================
# Operators
# =========================
class Operator(str, Enum):
    EQ = "$eq"
    NE = "$ne"
    GT = "$gt"
    GTE = "$gte"
    LT = "$lt"
    LTE = "$lte"

    @classmethod
    def parse(cls, name) -> Optional["Operator"]:
        try:
            return cls(name)
        except ValueError:
            return None

_RANGE_OPS: Dict[Operator, Callable[[Any, Any], bool]] = {
    Operator.GT: operator.gt,
    Operator.GTE: operator.ge,
    Operator.LT: operator.lt,
    Operator.LTE: operator.le,
}

def evaluate(op_name: str, field_value, target) -> bool:
    """Evaluate one operator; unknown operators and non-numeric ranges are False."""
    op = Operator.parse(op_name)
    if op is None:
        return False
    if op is Operator.EQ:
        return values_equal(field_value, target)
    if op is Operator.NE:
        return not values_equal(field_value, target)
    if not (is_number(field_value) and is_number(target)):
        return False
    return _RANGE_OPS[op](field_value, target)


# =========================
# Query engine
# =========================
def match_query(doc, query) -> bool:
    if not isinstance(query, dict):
        return True
    for key, cond in query.items():
        if not _eval_field(doc, key, cond):
            return False
    return True

def _eval_field(doc, key: str, cond) -> bool:
    value = get_field(doc, key)
    if isinstance(cond, dict):
        for op, arg in cond.items():
            if not evaluate(op, value, arg):
                return False
        return True
    return values_equal(value, cond)


# =========================
# Projection
# =========================
def _is_include_flag(v) -> bool:
    return v is True or (is_number(v) and not isinstance(v, float) and v == 1)

def _is_exclude_flag(v) -> bool:
    return v is False or (is_number(v) and not isinstance(v, float) and v == 0)

def project(doc, projection):
    if not isinstance(doc, dict) or not isinstance(projection, dict) or not projection:
        return doc
    out = {}
    for key, flag in projection.items():
        if _is_include_flag(flag) and key in doc:
            out[key] = doc[key]
    if "_id" not in out and "_id" in doc and not _is_exclude_flag(projection.get("_id")):
        out["_id"] = doc["_id"]
    return out


# =========================
# Sorting
# =========================
def compare_values(a, b) -> int:
    """Total order used for sorting. Pairs of unlike or unorderable types tie."""
    comparable = (
        (isinstance(a, str) and isinstance(b, str))
        or (is_number(a) and is_number(b))
        or (isinstance(a, bool) and isinstance(b, bool))
    )
    if not comparable:
        return 0
    if a < b:
        return -1
    if a > b:
        return 1
    return 0

def _is_descending(direction) -> bool:
    return is_number(direction) and not isinstance(direction, float) and direction == -1

def sort_documents(docs: List[Any], sort) -> List[Any]:
    """Stable multi-key sort; earlier keys in `sort` take precedence."""
    if not isinstance(sort, dict) or not sort:
        return list(docs)
    keys = [(key, _is_descending(direction)) for key, direction in sort.items()]

    def cmp(a, b):
        for key, descending in keys:
            c = compare_values(get_field(a, key), get_field(b, key))
            if c:
                return -c if descending else c
        return 0

    return sorted(docs, key=cmp_to_key(cmp))

def paginate(docs: List[Any], limit: int = 0, skip: int = 0) -> List[Any]:
    skip = max(0, skip)
    limit = max(0, limit)
    if skip >= len(docs):
        return []
    if limit:
        return docs[skip:skip + limit]
    return docs[skip:]


# =========================
# Schema validation
# =========================
_TYPE_CHECKS: Dict[str, Callable[[Any], bool]] = {
    "string": lambda v: isinstance(v, str),
    "number": is_number,
    "boolean": lambda v: isinstance(v, bool),
    "array": lambda v: isinstance(v, list),
    "object": lambda v: isinstance(v, dict),
}

def validate(doc, schema) -> bool:
    """Check a document against a schema of `required` names and `fields` rules.

    Malformed input (a document or schema that isn't an object) is treated as
    valid. Otherwise the first violation found returns False.
    """
    if not isinstance(doc, dict) or not isinstance(schema, dict):
        return True

    required = schema.get("required")
    if isinstance(required, list):
        for name in required:
            if isinstance(name, str) and name not in doc:
                return False

    fields = schema.get("fields")
    if not isinstance(fields, dict):
        return True
    for name, rules in fields.items():
        if name not in doc or not isinstance(rules, dict):
            continue
        if not _check_rules(doc[name], rules):
            return False
    return True

def _check_rules(val, rules: dict) -> bool:
    expected = rules.get("type")
    if isinstance(expected, str):
        check = _TYPE_CHECKS.get(expected)
        if check is not None and not check(val):
            return False
    if is_number(val):
        lo, hi = rules.get("min"), rules.get("max")
        if is_number(lo) and val < lo:
            return False
        if is_number(hi) and val > hi:
            return False
    allowed = rules.get("enum")
    if isinstance(allowed, list):
        if not any(values_equal(val, item) for item in allowed):
            return False
    return True


# =========================
# Pipelines
# =========================
def _as_collection(data) -> List[Any]:
    return data if isinstance(data, list) else []

def find(collection, query=None, sort=None, projection=None,
         limit: int = 0, skip: int = 0) -> List[Any]:
    """Filter, sort, paginate, then project. The input collection is not modified."""
    docs = _as_collection(collection)
    matched = [d for d in docs if match_query(d, query)]
    ordered = sort_documents(matched, sort)
    page = paginate(ordered, limit, skip)
    out = [project(copy.deepcopy(d), projection) for d in page]
    log.debug("find_completed", scanned=len(docs), matched=len(matched), returned=len(out))
    return out

def count(collection, query=None) -> int:
    return sum(1 for d in _as_collection(collection) if match_query(d, query))

def update(collection, query, patch) -> List[Any]:
    """Merge `patch` into every matching document; `_id` is never overwritten.

    Returns the whole collection, matched and unmatched, as a new list.
    """
    out = copy.deepcopy(_as_collection(collection))
    matched = 0
    for doc in out:
        if not match_query(doc, query):
            continue
        matched += 1
        if isinstance(doc, dict) and isinstance(patch, dict):
            for key, value in patch.items():
                if key == "_id":
                    continue
                doc[key] = copy.deepcopy(value)
    log.debug("update_applied", matched=matched, size=len(out))
    return out

def delete(collection, query) -> List[Any]:
    docs = _as_collection(collection)
    out = [copy.deepcopy(d) for d in docs if not match_query(d, query)]
    log.debug("delete_applied", deleted=len(docs) - len(out), size=len(out))
    return out

def insert(collection, document, schema=None, assign_id: bool = True) -> List[Any]:
    """Append a document, validating it first when a schema is given.

    Raises InvalidDocumentError on a schema violation. A missing `_id` is
    filled with a random UUID when `assign_id` is set.
    """
    if schema is not None and not validate(document, schema):
        log.error("schema_violation", document_id=get_field(document, "_id"))
        raise InvalidDocumentError("Document violates collection schema.", document)
    doc = copy.deepcopy(document)
    if assign_id and isinstance(doc, dict) and "_id" not in doc:
        doc["_id"] = generate_id()
    out = copy.deepcopy(_as_collection(collection))
    out.append(doc)
    log.debug("insert_applied", document_id=get_field(doc, "_id"), size=len(out))
    return out

def upsert(collection, query, document, schema=None, assign_id: bool = True) -> List[Any]:
    if count(collection, query) > 0:
        return update(collection, query, document)
    return insert(collection, document, schema=schema, assign_id=assign_id)


# =========================
# Collection
# =========================
class Collection:
    """
    Transient, in-memory collection with a pymongo-like surface.
    Usage:
        coll = Collection([{"_id": "1", "score": 50}])
        coll.insert_one({"score": 75})
        coll.find({"score": {"$gt": 60}}, sort={"score": -1})
    Nothing is persisted; every write swaps in a freshly computed list.
    """
    def __init__(self, documents: Optional[Iterable[Any]] = None, schema: Optional[dict] = None,
                 settings: Optional[EngineSettings] = None):
        self._docs: List[Any] = copy.deepcopy(list(documents or []))
        self._schema = schema
        self.settings = settings or get_settings()

    def __len__(self):
        return len(self._docs)

    # ----- Schema -----
    def set_schema(self, schema: Optional[dict]):
        """Assign (or clear with None) the schema checked on insert."""
        self._schema = schema

    def validate(self, document) -> bool:
        if self._schema is None:
            return True
        return validate(document, self._schema)

    # ----- Insert -----
    def insert_one(self, document) -> InsertOneResult:
        self._docs = insert(self._docs, document, schema=self._schema,
                            assign_id=self.settings.assign_ids)
        return InsertOneResult(get_field(self._docs[-1], "_id"))

    def insert_many(self, documents: Iterable[Any]) -> List[InsertOneResult]:
        # all or nothing: validate everything before touching the collection
        documents = list(documents)
        for doc in documents:
            if not self.validate(doc):
                log.error("schema_violation", document_id=get_field(doc, "_id"))
                raise InvalidDocumentError("Document violates collection schema.", doc)
        return [self.insert_one(doc) for doc in documents]

    # ----- Read -----
    def find(self, query: Optional[dict] = None, projection: Optional[dict] = None,
             sort: Optional[dict] = None, skip: int = 0, limit: int = 0) -> List[Any]:
        return find(self._docs, query, sort, projection, limit, skip)

    def find_one(self, query: Optional[dict] = None, projection: Optional[dict] = None):
        results = find(self._docs, query, None, projection, limit=1)
        return results[0] if results else None

    def count_documents(self, query: Optional[dict] = None) -> int:
        return count(self._docs, query)

    def to_list(self) -> List[Any]:
        return copy.deepcopy(self._docs)

    # ----- Write -----
    def update_many(self, query: dict, patch: dict) -> UpdateResult:
        matched = count(self._docs, query)
        self._docs = update(self._docs, query, patch)
        return UpdateResult(matched_count=matched)

    def upsert(self, query: dict, document: dict) -> UpdateResult:
        matched = count(self._docs, query)
        self._docs = upsert(self._docs, query, document, schema=self._schema,
                            assign_id=self.settings.assign_ids)
        if matched:
            return UpdateResult(matched_count=matched)
        return UpdateResult(matched_count=0, upserted_id=get_field(self._docs[-1], "_id"))

    def delete_many(self, query: dict) -> DeleteResult:
        before = len(self._docs)
        self._docs = delete(self._docs, query)
        return DeleteResult(before - len(self._docs))


# =========================
# Text boundary
# =========================
def _reject_constant(name):
    raise ValueError(f"Non-standard JSON constant: {name}")

def _parse(text, default, label: str, expected: Optional[type] = None):
    """Parse JSON text, falling back to `default` on bad syntax or shape."""
    expected = expected or type(default)
    if text is None:
        return default
    try:
        value = json.loads(text, parse_constant=_reject_constant)
    except (TypeError, ValueError) as e:
        log.warning("input_parse_failed", input=label, error=str(e))
        return default
    if not isinstance(value, expected):
        log.warning("input_shape_mismatch", input=label, expected=expected.__name__)
        return default
    return value

def _parse_array(text, label: str) -> list:
    return _parse(text, [], label)

def _parse_object(text, label: str) -> dict:
    return _parse(text, {}, label)

def _dump(value) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)

def validate_json(doc_text, schema_text) -> bool:
    # unparseable input stays None, which validate() lets through
    doc = _parse(doc_text, None, "document", expected=dict)
    schema = _parse(schema_text, None, "schema", expected=dict)
    return validate(doc, schema)

def find_json(data_text, query_text, sort_text, projection_text,
              limit: int = 0, skip: int = 0) -> str:
    return _dump(find(
        _parse_array(data_text, "data"),
        _parse_object(query_text, "query"),
        _parse_object(sort_text, "sort"),
        _parse_object(projection_text, "projection"),
        limit=max(0, limit),
        skip=max(0, skip),
    ))

def count_json(data_text, query_text) -> int:
    return count(_parse_array(data_text, "data"), _parse_object(query_text, "query"))

def update_json(data_text, query_text, patch_text) -> str:
    return _dump(update(
        _parse_array(data_text, "data"),
        _parse_object(query_text, "query"),
        _parse_object(patch_text, "update"),
    ))

def delete_json(data_text, query_text) -> str:
    return _dump(delete(_parse_array(data_text, "data"), _parse_object(query_text, "query")))

def insert_json(data_text, doc_text, schema_text=None) -> str:
    data = _parse_array(data_text, "data")
    doc = _parse(doc_text, None, "document", expected=dict)
    if doc is None:
        return _dump(data)
    schema = _parse_object(schema_text, "schema") if schema_text is not None else None
    try:
        return _dump(insert(data, doc, schema=schema,
                            assign_id=get_settings().assign_ids))
    except InvalidDocumentError:
        return _dump(data)

def upsert_json(data_text, query_text, doc_text, schema_text=None) -> str:
    data = _parse_array(data_text, "data")
    doc = _parse(doc_text, None, "document", expected=dict)
    if doc is None:
        return _dump(data)
    schema = _parse_object(schema_text, "schema") if schema_text is not None else None
    try:
        return _dump(upsert(data, _parse_object(query_text, "query"), doc, schema=schema,
                            assign_id=get_settings().assign_ids))
    except InvalidDocumentError:
        return _dump(data)
