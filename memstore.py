# memstore.py
"""
In-process document store behind ``memory://<name>`` URIs.

Implements the subset of the pymongo client surface the data layer uses
(client, database, collection, cursors, indexes, aggregation) and raises
pymongo's own error classes, so callers handle both backends identically.
All clients opened with the same ``<name>`` share one server's data.
"""
import copy
import re
import threading
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from bson import ObjectId
from pymongo.errors import BulkWriteError, DuplicateKeyError, OperationFailure
from pymongo.results import DeleteResult, InsertManyResult, InsertOneResult, UpdateResult

from geo import coordinates_of, distance_between, point_in_geometry

SCHEME = "memory://"


class _Missing:
    def __repr__(self):
        return "<missing>"


MISSING = _Missing()


# =========================
# Server registry
# =========================
class MemoryServer:
    def __init__(self, name: str):
        self.name = name
        self.databases: Dict[str, "MemoryDatabase"] = {}
        self.lock = threading.RLock()

    def database(self, name: str) -> "MemoryDatabase":
        with self.lock:
            if name not in self.databases:
                self.databases[name] = MemoryDatabase(self, name)
            return self.databases[name]


_servers: Dict[str, MemoryServer] = {}
_servers_lock = threading.Lock()


def get_server(name: str) -> MemoryServer:
    with _servers_lock:
        if name not in _servers:
            _servers[name] = MemoryServer(name)
        return _servers[name]


def drop_server(name: str):
    with _servers_lock:
        _servers.pop(name, None)


def server_name(uri: str) -> str:
    if not uri.startswith(SCHEME):
        raise ValueError(f"Not a memory URI: {uri}")
    name = uri[len(SCHEME):].strip("/")
    if not re.fullmatch(r"[A-Za-z0-9_.\-]*", name):
        raise ValueError(f"Invalid memory server name: {name!r}")
    return name or "default"


# =========================
# Paths
# =========================
def deep_get(doc, dotted_key: str, default=MISSING):
    cur = doc
    parts = dotted_key.split(".")
    for i, p in enumerate(parts):
        if isinstance(cur, dict):
            if p not in cur:
                return default
            cur = cur[p]
        elif isinstance(cur, list):
            if p.isdigit():
                idx = int(p)
                if idx >= len(cur):
                    return default
                cur = cur[idx]
            else:
                rest = ".".join(parts[i:])
                values = [deep_get(elem, rest) for elem in cur if isinstance(elem, dict)]
                values = [v for v in values if v is not MISSING]
                return values if values else default
        else:
            return default
    return cur


def deep_set(doc: dict, dotted_key: str, value):
    parts = dotted_key.split(".")
    cur = doc
    for p in parts[:-1]:
        if p not in cur or not isinstance(cur[p], dict):
            cur[p] = {}
        cur = cur[p]
    cur[parts[-1]] = value


def deep_unset(doc: dict, dotted_key: str):
    parts = dotted_key.split(".")
    cur = doc
    for p in parts[:-1]:
        if p not in cur or not isinstance(cur[p], dict):
            return
        cur = cur[p]
    cur.pop(parts[-1], None)


def _hashable(value):
    if isinstance(value, dict):
        return ("__doc__", tuple((k, _hashable(v)) for k, v in value.items()))
    if isinstance(value, list):
        return ("__arr__", tuple(_hashable(v) for v in value))
    if value is MISSING:
        return None
    return value


# BSON comparison order: null, numbers, strings, objects, arrays, ObjectId, bool, dates
def sort_key(value):
    if value is MISSING or value is None:
        return (1, 0)
    if isinstance(value, bool):
        return (8, value)
    if isinstance(value, (int, float)):
        return (2, value)
    if isinstance(value, str):
        return (3, value)
    if isinstance(value, dict):
        return (4, str(_hashable(value)))
    if isinstance(value, list):
        return (5, [sort_key(v) for v in value])
    if isinstance(value, ObjectId):
        return (7, str(value))
    if isinstance(value, datetime):
        return (9, value.timestamp())
    return (10, str(value))


def sort_documents(docs: List[dict], keys: List[tuple]) -> List[dict]:
    # Repeated stable sorts, least significant key first
    for key, direction in reversed(keys):
        docs.sort(key=lambda d: sort_key(deep_get(d, key)), reverse=direction < 0)
    return docs


# =========================
# Query engine
# =========================
COMPARATORS = {
    "$eq", "$ne", "$gt", "$gte", "$lt", "$lte",
    "$in", "$nin", "$exists", "$regex", "$options", "$size",
    "$near", "$geoWithin",
}
LOGICAL = {"$and", "$or", "$nor"}


def match_query(doc: dict, query: dict, geo_ok: bool = True) -> bool:
    if not isinstance(query, dict):
        raise OperationFailure("query filter must be an object", code=2)
    for key, cond in query.items():
        if key.startswith("$"):
            if key not in LOGICAL:
                raise OperationFailure(f"unknown top level operator: {key}", code=2)
            if not _eval_logical(doc, key, cond):
                return False
        elif not _eval_field(doc, key, cond, geo_ok):
            return False
    return True


def _eval_logical(doc: dict, op: str, clauses) -> bool:
    if not isinstance(clauses, list) or not clauses:
        raise OperationFailure(f"{op} must be a nonempty array", code=2)
    results = [match_query(doc, clause) for clause in clauses]
    if op == "$and":
        return all(results)
    if op == "$or":
        return any(results)
    return not any(results)


def _is_operator_dict(cond) -> bool:
    return isinstance(cond, dict) and bool(cond) and all(k.startswith("$") for k in cond)


def _eval_field(doc: dict, dotted_key: str, cond, geo_ok: bool) -> bool:
    value = deep_get(doc, dotted_key)
    if _is_operator_dict(cond):
        for op, arg in cond.items():
            if op not in COMPARATORS:
                raise OperationFailure(f"unknown operator: {op}", code=2)
            if op == "$options":
                continue
            if op == "$near" and not geo_ok:
                raise OperationFailure("$near is not allowed in this context", code=2)
            if op == "$regex":
                arg = (arg, cond.get("$options", ""))
            if not _eval_op(value, op, arg):
                return False
        return True
    return _equals(value, cond)


def _equals(value, target) -> bool:
    if value is MISSING:
        return target is None
    if value == target:
        return True
    # Array fields match when any element matches
    return isinstance(value, list) and not isinstance(target, list) and target in value


def _compare(value, op, arg) -> bool:
    if value is MISSING or value is None:
        return False
    candidates = value if isinstance(value, list) else [value]
    for v in candidates:
        try:
            if op == "$gt" and v > arg: return True
            if op == "$gte" and v >= arg: return True
            if op == "$lt" and v < arg: return True
            if op == "$lte" and v <= arg: return True
        except TypeError:
            continue
    return False


def _eval_op(value, op, arg) -> bool:
    if op == "$eq":
        return _equals(value, arg)
    if op == "$ne":
        return not _equals(value, arg)
    if op in ("$gt", "$gte", "$lt", "$lte"):
        return _compare(value, op, arg)
    if op in ("$in", "$nin"):
        if not isinstance(arg, list):
            raise OperationFailure(f"{op} needs an array", code=2)
        found = any(_equals(value, a) for a in arg)
        return found if op == "$in" else not found
    if op == "$exists":
        return (value is not MISSING) == bool(arg)
    if op == "$regex":
        pattern, options = arg
        if not isinstance(value, str):
            return False
        flags = re.IGNORECASE if "i" in options else 0
        return re.search(pattern, value, flags) is not None
    if op == "$size":
        return isinstance(value, list) and len(value) == arg
    if op == "$near":
        # Distance bound only; ordering is applied by the cursor
        origin, max_distance = _near_args(arg)
        coords = coordinates_of(value) if value is not MISSING else None
        if coords is None:
            return False
        return max_distance is None or distance_between(coords, origin) <= max_distance
    if op == "$geoWithin":
        if not isinstance(arg, dict) or "$geometry" not in arg:
            raise OperationFailure("$geoWithin requires $geometry", code=2)
        coords = coordinates_of(value) if value is not MISSING else None
        if coords is None:
            return False
        try:
            return point_in_geometry(coords, arg["$geometry"])
        except ValueError as e:
            raise OperationFailure(str(e), code=2) from e
    return False


def _near_args(arg):
    if not isinstance(arg, dict) or "$geometry" not in arg:
        raise OperationFailure("$near requires $geometry", code=2)
    origin = coordinates_of(arg["$geometry"])
    if origin is None:
        raise OperationFailure("invalid point in $near", code=2)
    return origin, arg.get("$maxDistance")


def _find_near(query: dict):
    for key, cond in query.items():
        if isinstance(cond, dict) and "$near" in cond:
            return key, _near_args(cond["$near"])[0]
    return None


# =========================
# Expressions and projection
# =========================
def evaluate(doc: dict, expr):
    if isinstance(expr, str) and expr.startswith("$"):
        return deep_get(doc, expr[1:])
    if isinstance(expr, list):
        return [_none_if_missing(evaluate(doc, e)) for e in expr]
    if isinstance(expr, dict):
        if len(expr) == 1:
            op, arg = next(iter(expr.items()))
            if op.startswith("$"):
                return _eval_expression_op(doc, op, arg)
        return {k: _none_if_missing(evaluate(doc, v)) for k, v in expr.items()}
    return expr


def _none_if_missing(v):
    return None if v is MISSING else v


def _eval_expression_op(doc, op, arg):
    if op == "$literal":
        return arg
    if op == "$round":
        args = arg if isinstance(arg, list) else [arg]
        value = _none_if_missing(evaluate(doc, args[0]))
        places = evaluate(doc, args[1]) if len(args) > 1 else 0
        if value is None:
            return None
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            raise OperationFailure("$round only supports numeric types", code=51081)
        return round(value, places)
    raise OperationFailure(f"Unrecognized expression '{op}'", code=168)


def project(doc: dict, spec: Optional[dict]) -> dict:
    if not spec:
        return doc
    include_id = spec.get("_id", 1) not in (0, False)
    rest = {k: v for k, v in spec.items() if k != "_id"}
    excluded = [k for k, v in rest.items() if v is False or (v == 0 and not isinstance(v, bool))]
    if not rest and include_id:
        return {"_id": doc["_id"]} if "_id" in doc else {}
    if len(excluded) == len(rest):
        out = copy.deepcopy(doc)
        for k in excluded:
            deep_unset(out, k)
        if not include_id:
            out.pop("_id", None)
        return out
    if excluded:
        raise OperationFailure(f"Cannot do exclusion on field {excluded[0]} in inclusion projection", code=31254)

    out = {}
    if include_id and "_id" in doc:
        out["_id"] = doc["_id"]
    if "_id" in spec and spec["_id"] not in (0, 1, False, True):
        out["_id"] = _none_if_missing(evaluate(doc, spec["_id"]))
    for k, v in rest.items():
        if v is True or (isinstance(v, (int, float)) and not isinstance(v, bool)):
            val = deep_get(doc, k)
        else:
            val = evaluate(doc, v)
        if val is not MISSING:
            deep_set(out, k, copy.deepcopy(val))
    return out


# =========================
# Aggregation
# =========================
def aggregate_docs(collection: "MemoryCollection", pipeline: List[dict]) -> List[dict]:
    out = None
    for position, stage in enumerate(pipeline):
        if not isinstance(stage, dict) or len(stage) != 1:
            raise OperationFailure("A pipeline stage specification object must contain exactly one field.", code=40323)
        op, spec = next(iter(stage.items()))
        if op == "$geoNear":
            if position != 0:
                raise OperationFailure("$geoNear is only valid as the first stage in a pipeline", code=40603)
            out = _agg_geo_near(collection, spec)
            continue
        if out is None:
            out = collection._all_docs()
        if op == "$match":
            out = [d for d in out if match_query(d, spec, geo_ok=False)]
        elif op == "$project":
            out = [project(d, spec) for d in out]
        elif op == "$sort":
            out = sort_documents(out, list(spec.items()))
        elif op == "$group":
            out = _agg_group(out, spec)
        elif op == "$lookup":
            out = _agg_lookup(collection, out, spec)
        elif op == "$unwind":
            out = _agg_unwind(out, spec)
        elif op == "$limit":
            out = out[:spec]
        elif op == "$skip":
            out = out[spec:]
        else:
            raise OperationFailure(f"Unrecognized pipeline stage name: '{op}'", code=40324)
    return out if out is not None else collection._all_docs()


def _agg_group(docs: List[dict], spec: dict) -> List[dict]:
    if "_id" not in spec:
        raise OperationFailure("a group specification must include an _id", code=15955)
    accumulators = {k: v for k, v in spec.items() if k != "_id"}
    for field, acc in accumulators.items():
        if not isinstance(acc, dict) or len(acc) != 1:
            raise OperationFailure(f"The field '{field}' must be an accumulator object", code=40234)
        op = next(iter(acc))
        if op not in ("$sum", "$avg", "$push", "$min", "$max"):
            raise OperationFailure(f"unknown group operator '{op}'", code=15952)

    buckets: Dict[Any, dict] = {}
    state: Dict[Any, dict] = {}
    for d in docs:
        key = _none_if_missing(evaluate(d, spec["_id"]))
        hk = _hashable(key)
        if hk not in buckets:
            buckets[hk] = {"_id": key}
            state[hk] = {}
            for field, acc in accumulators.items():
                op = next(iter(acc))
                state[hk][field] = [] if op in ("$push", "$avg") else None
                buckets[hk][field] = 0 if op == "$sum" else None
        for field, acc in accumulators.items():
            op, arg = next(iter(acc.items()))
            val = evaluate(d, arg)
            numeric = isinstance(val, (int, float)) and not isinstance(val, bool)
            if op == "$sum":
                if numeric:
                    buckets[hk][field] += val
            elif op == "$avg":
                if numeric:
                    state[hk][field].append(val)
            elif op == "$push":
                if val is not MISSING:
                    state[hk][field].append(copy.deepcopy(val))
            elif op in ("$min", "$max") and val is not MISSING and val is not None:
                cur = buckets[hk][field]
                if cur is None:
                    buckets[hk][field] = val
                elif op == "$min" and sort_key(val) < sort_key(cur):
                    buckets[hk][field] = val
                elif op == "$max" and sort_key(val) > sort_key(cur):
                    buckets[hk][field] = val

    for hk, b in buckets.items():
        for field, acc in accumulators.items():
            op = next(iter(acc))
            if op == "$push":
                b[field] = state[hk][field]
            elif op == "$avg":
                values = state[hk][field]
                b[field] = sum(values) / len(values) if values else None
    return list(buckets.values())


def _agg_lookup(collection: "MemoryCollection", docs: List[dict], spec: dict) -> List[dict]:
    for required in ("from", "localField", "foreignField", "as"):
        if required not in spec:
            raise OperationFailure(f"$lookup requires '{required}'", code=4570)
    foreign = collection.database[spec["from"]]._all_docs()
    out = []
    for d in docs:
        local = _none_if_missing(deep_get(d, spec["localField"]))
        locals_ = local if isinstance(local, list) else [local]
        matches = []
        for f in foreign:
            fval = _none_if_missing(deep_get(f, spec["foreignField"]))
            fvals = fval if isinstance(fval, list) else [fval]
            if any(lv == fv for lv in locals_ for fv in fvals):
                matches.append(f)
        nd = copy.deepcopy(d)
        deep_set(nd, spec["as"], copy.deepcopy(matches))
        out.append(nd)
    return out


def _agg_unwind(docs: List[dict], spec) -> List[dict]:
    preserve = False
    path = spec
    if isinstance(spec, dict):
        path = spec.get("path")
        preserve = bool(spec.get("preserveNullAndEmptyArrays", False))
    if not isinstance(path, str) or not path.startswith("$"):
        raise OperationFailure("$unwind path must be prefixed by a '$'", code=28818)
    path = path[1:]
    out = []
    for d in docs:
        arr = deep_get(d, path)
        if arr is MISSING or arr is None or arr == []:
            if preserve:
                out.append(d)
            continue
        if not isinstance(arr, list):
            arr = [arr]
        for item in arr:
            nd = copy.deepcopy(d)
            deep_set(nd, path, copy.deepcopy(item))
            out.append(nd)
    return out


def _agg_geo_near(collection: "MemoryCollection", spec: dict) -> List[dict]:
    if "distanceField" not in spec or "near" not in spec:
        raise OperationFailure("$geoNear requires 'near' and 'distanceField'", code=40412)
    origin = coordinates_of(spec["near"])
    if origin is None:
        raise OperationFailure("$geoNear requires a valid 'near' point", code=16680)
    field = spec.get("key")
    if field:
        collection._require_geo_index(field)
    else:
        field = collection._geo_field()
    multiplier = spec.get("distanceMultiplier", 1)
    max_distance = spec.get("maxDistance")
    query = spec.get("query") or {}

    ranked = []
    for d in collection._all_docs():
        value = deep_get(d, field)
        coords = coordinates_of(value) if value is not MISSING else None
        if coords is None:
            continue
        if query and not match_query(d, query, geo_ok=False):
            continue
        meters = distance_between(coords, origin)
        if max_distance is not None and meters > max_distance:
            continue
        deep_set(d, spec["distanceField"], meters * multiplier)
        ranked.append((meters, d))
    ranked.sort(key=lambda pair: pair[0])
    return [d for _, d in ranked]


# =========================
# Cursor
# =========================
class MemoryCursor:
    """Lazy cursor; documents are produced on iteration."""

    def __init__(self, source: Callable[[], Iterable[dict]], projection: Optional[dict] = None):
        self._source = source
        self._projection = projection
        self._it = None

    def __iter__(self):
        return self

    def __next__(self):
        if self._it is None:
            self._it = iter(self._source())
        doc = next(self._it)
        return project(doc, self._projection)

    def to_list(self, length: Optional[int] = None) -> List[dict]:
        out = []
        for idx, d in enumerate(self):
            if length is not None and idx >= length:
                break
            out.append(d)
        return out

    def close(self):
        self._it = iter(())


# =========================
# Collection
# =========================
class MemoryCollection:
    def __init__(self, database: "MemoryDatabase", name: str):
        self.database = database
        self.name = name
        self.full_name = f"{database.name}.{name}"
        self._docs: List[dict] = []
        self._indexes: Dict[str, dict] = {"_id_": {"key": [("_id", 1)], "unique": True}}

    @property
    def _lock(self):
        return self.database.server.lock

    def _all_docs(self) -> List[dict]:
        with self._lock:
            return copy.deepcopy(self._docs)

    def _geo_field(self) -> str:
        geo = [k for spec in self._indexes.values() for k, d in spec["key"] if d == "2dsphere"]
        if len(geo) != 1:
            raise OperationFailure("$geoNear requires a 2dsphere index, unable to find index for $geoNear query", code=291)
        return geo[0]

    def _require_geo_index(self, field: str):
        if not any(k == field and d == "2dsphere" for spec in self._indexes.values() for k, d in spec["key"]):
            raise OperationFailure("error processing query: unable to find index for $geoNear query", code=291)

    def _check_geo_keys(self, doc: dict, keys: Optional[List[tuple]] = None):
        if keys is None:
            keys = [kd for spec in self._indexes.values() for kd in spec["key"]]
        for k, d in keys:
            if d != "2dsphere":
                continue
            value = deep_get(doc, k)
            if value is not MISSING and value is not None and coordinates_of(value) is None:
                raise OperationFailure(f"Can't extract geo keys: {doc.get('_id')} {value}", code=16755)

    # ----- Unique keys -----
    def _unique_violation(self, doc: dict, skip: Optional[dict] = None) -> Optional[str]:
        for name, spec in self._indexes.items():
            if not spec.get("unique"):
                continue
            key = tuple(_hashable(_none_if_missing(deep_get(doc, f))) for f, _ in spec["key"])
            for other in self._docs:
                if other is skip:
                    continue
                if tuple(_hashable(_none_if_missing(deep_get(other, f))) for f, _ in spec["key"]) == key:
                    return name
        return None

    def _duplicate_error(self, index: str, doc: dict) -> DuplicateKeyError:
        fields = [f for f, _ in self._indexes[index]["key"]]
        key_value = {f: _none_if_missing(deep_get(doc, f)) for f in fields}
        msg = f"E11000 duplicate key error collection: {self.full_name} index: {index} dup key: {key_value}"
        return DuplicateKeyError(msg, 11000, {"code": 11000, "errmsg": msg, "keyValue": key_value})

    # ----- Insert -----
    def insert_one(self, document: dict) -> InsertOneResult:
        if not isinstance(document, dict):
            raise TypeError("document must be an instance of dict")
        if "_id" not in document:
            document["_id"] = ObjectId()
        doc = copy.deepcopy(document)
        with self._lock:
            self._check_geo_keys(doc)
            violated = self._unique_violation(doc)
            if violated:
                raise self._duplicate_error(violated, doc)
            self._docs.append(doc)
        return InsertOneResult(doc["_id"], True)

    def insert_many(self, documents: Iterable[dict], ordered: bool = True) -> InsertManyResult:
        documents = list(documents)
        if not documents:
            raise TypeError("documents must be a non-empty list")
        inserted = []
        errors = []
        for idx, doc in enumerate(documents):
            try:
                inserted.append(self.insert_one(doc).inserted_id)
            except OperationFailure as e:
                errors.append({"index": idx, "code": e.code, "errmsg": str(e), "op": doc})
                if ordered:
                    break
        if errors:
            raise BulkWriteError({
                "writeErrors": errors, "writeConcernErrors": [],
                "nInserted": len(inserted), "nUpserted": 0, "nMatched": 0,
                "nModified": 0, "nRemoved": 0, "upserted": [],
            })
        return InsertManyResult(inserted, True)

    # ----- Find -----
    def find(self, filter: Optional[dict] = None, projection: Optional[dict] = None) -> MemoryCursor:
        query = filter or {}

        def source():
            docs = [d for d in self._all_docs() if match_query(d, query)]
            near = _find_near(query)
            if near:
                field, origin = near
                self._require_geo_index(field)
                docs.sort(key=lambda d: distance_between(coordinates_of(deep_get(d, field)), origin))
            return docs

        return MemoryCursor(source, projection)

    def find_one(self, filter: Optional[dict] = None, projection: Optional[dict] = None) -> Optional[dict]:
        for doc in self.find(filter, projection):
            return doc
        return None

    def count_documents(self, filter: dict) -> int:
        return sum(1 for d in self._all_docs() if match_query(d, filter, geo_ok=False))

    # ----- Update -----
    def update_one(self, filter: dict, update: dict, upsert: bool = False) -> UpdateResult:
        return self._update(filter, update, upsert, multi=False)

    def update_many(self, filter: dict, update: dict, upsert: bool = False) -> UpdateResult:
        return self._update(filter, update, upsert, multi=True)

    def _update(self, filter: dict, update: dict, upsert: bool, multi: bool) -> UpdateResult:
        if not isinstance(update, dict) or not update or not all(k.startswith("$") for k in update):
            raise ValueError("update only works with $ operators")
        with self._lock:
            matched = modified = 0
            for idx, doc in enumerate(self._docs):
                if not match_query(doc, filter, geo_ok=False):
                    continue
                matched += 1
                new_doc = apply_update(doc, update, is_upsert=False)
                if new_doc != doc:
                    self._check_geo_keys(new_doc)
                    violated = self._unique_violation(new_doc, skip=doc)
                    if violated:
                        raise self._duplicate_error(violated, new_doc)
                    self._docs[idx] = new_doc
                    modified += 1
                if not multi:
                    break
            if matched or not upsert:
                return UpdateResult({"n": matched, "nModified": modified}, True)

            base = {}
            for k, v in filter.items():
                if not k.startswith("$") and not _is_operator_dict(v):
                    deep_set(base, k, copy.deepcopy(v))
                elif isinstance(v, dict) and "$eq" in v:
                    deep_set(base, k, copy.deepcopy(v["$eq"]))
            new_doc = apply_update(base, update, is_upsert=True)
            new_doc.setdefault("_id", ObjectId())
            self._check_geo_keys(new_doc)
            violated = self._unique_violation(new_doc)
            if violated:
                raise self._duplicate_error(violated, new_doc)
            self._docs.append(new_doc)
            return UpdateResult({"n": 1, "nModified": 0, "upserted": new_doc["_id"]}, True)

    # ----- Delete -----
    def delete_one(self, filter: dict) -> DeleteResult:
        with self._lock:
            for idx, doc in enumerate(self._docs):
                if match_query(doc, filter, geo_ok=False):
                    del self._docs[idx]
                    return DeleteResult({"n": 1}, True)
            return DeleteResult({"n": 0}, True)

    def delete_many(self, filter: dict) -> DeleteResult:
        with self._lock:
            keep = [d for d in self._docs if not match_query(d, filter, geo_ok=False)]
            deleted = len(self._docs) - len(keep)
            self._docs = keep
            return DeleteResult({"n": deleted}, True)

    # ----- Indexes -----
    def create_index(self, keys, unique: bool = False, name: Optional[str] = None, **kwargs) -> str:
        if isinstance(keys, str):
            keys = [(keys, 1)]
        keys = [(k, d) for k, d in keys]
        name = name or "_".join(f"{k}_{d}" for k, d in keys)
        with self._lock:
            existing = self._indexes.get(name)
            if existing is not None:
                if existing["key"] == keys and bool(existing.get("unique")) == bool(unique):
                    return name
                raise OperationFailure(
                    f"An existing index has the same name as the requested index. "
                    f"When index names are not specified, they are auto generated and can cause conflicts. "
                    f"Requested index: {keys}, existing index: {existing['key']}", code=86)
            for other_name, other in self._indexes.items():
                if other["key"] == keys:
                    raise OperationFailure(
                        f"Index already exists with a different name: {other_name}", code=85)
            for doc in self._docs:
                self._check_geo_keys(doc, keys)
            if unique:
                seen = set()
                for doc in self._docs:
                    key = tuple(_hashable(_none_if_missing(deep_get(doc, f))) for f, _ in keys)
                    if key in seen:
                        msg = f"E11000 duplicate key error collection: {self.full_name} index: {name} dup key: {key}"
                        raise DuplicateKeyError(msg, 11000, {"code": 11000, "errmsg": msg})
                    seen.add(key)
            spec = {"key": keys}
            if unique:
                spec["unique"] = True
            self._indexes[name] = spec
        return name

    def index_information(self) -> Dict[str, dict]:
        with self._lock:
            return {name: {"v": 2, **copy.deepcopy(spec)} for name, spec in self._indexes.items()}

    # ----- Aggregation -----
    def aggregate(self, pipeline: List[dict]) -> MemoryCursor:
        if not isinstance(pipeline, list):
            raise TypeError("pipeline must be a list")
        return MemoryCursor(lambda: aggregate_docs(self, pipeline))


def apply_update(doc: dict, update: dict, is_upsert: bool) -> dict:
    new_doc = copy.deepcopy(doc)
    for op, changes in update.items():
        if not isinstance(changes, dict):
            raise OperationFailure(f"Modifiers operate on fields but we found type {type(changes).__name__} instead", code=9)
        if op == "$set" or (op == "$setOnInsert" and is_upsert):
            for k, v in changes.items():
                deep_set(new_doc, k, copy.deepcopy(v))
        elif op == "$setOnInsert":
            continue
        elif op == "$unset":
            for k in changes:
                deep_unset(new_doc, k)
        elif op == "$inc":
            for k, v in changes.items():
                cur = deep_get(new_doc, k, 0)
                if not isinstance(cur, (int, float)) or not isinstance(v, (int, float)):
                    raise OperationFailure(f"Cannot apply $inc to a value of non-numeric type: {k}", code=14)
                deep_set(new_doc, k, cur + v)
        elif op == "$push":
            for k, v in changes.items():
                arr = deep_get(new_doc, k, None)
                if arr is None:
                    arr = []
                if not isinstance(arr, list):
                    raise OperationFailure(f"The field '{k}' must be an array", code=2)
                if isinstance(v, dict) and "$each" in v:
                    arr.extend(copy.deepcopy(v["$each"]))
                else:
                    arr.append(copy.deepcopy(v))
                deep_set(new_doc, k, arr)
        else:
            raise OperationFailure(f"Unknown modifier: {op}", code=9)
    return new_doc


# =========================
# Database and Client
# =========================
class MemoryDatabase:
    def __init__(self, server: MemoryServer, name: str):
        self.server = server
        self.name = name
        self.collections: Dict[str, MemoryCollection] = {}

    def __getitem__(self, coll_name: str) -> MemoryCollection:
        return self.get_collection(coll_name)

    def get_collection(self, coll_name: str) -> MemoryCollection:
        with self.server.lock:
            if coll_name not in self.collections:
                self.collections[coll_name] = MemoryCollection(self, coll_name)
            return self.collections[coll_name]

    def list_collection_names(self) -> List[str]:
        return list(self.collections.keys())

    def command(self, name, *args, **kwargs) -> dict:
        if name == "ping":
            return {"ok": 1.0}
        raise OperationFailure(f"no such command: '{name}'", code=59)


class MemoryClient:
    """
    Client for the in-process store, shaped like pymongo.MongoClient.
    Usage:
        client = MemoryClient("memory://demo")
        coll = client["my_db"]["my_coll"]
    """
    def __init__(self, uri: str, **kwargs):
        self.server = get_server(server_name(uri))
        self.admin = self.server.database("admin")

    def __getitem__(self, db_name: str) -> MemoryDatabase:
        return self.get_database(db_name)

    def get_database(self, db_name: str) -> MemoryDatabase:
        return self.server.database(db_name)

    def close(self):
        pass
