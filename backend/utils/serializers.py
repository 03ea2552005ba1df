from bson import ObjectId
from datetime import datetime


def serialize_value(value):
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: serialize_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [serialize_value(v) for v in value]
    return value


def serialize_doc(doc: dict) -> dict:
    """Mongo document -> JSON-safe dict with `_id` exposed as `id`."""
    if not doc:
        return doc

    doc = serialize_value(dict(doc))
    if "_id" in doc:
        doc["id"] = doc.pop("_id")
    return doc


def serialize_docs(docs):
    return [serialize_doc(d) for d in docs]
