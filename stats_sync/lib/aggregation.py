"""
DuckDB aggregation of source rows into logical aggregate records.

One logical record per (scope, entity, brand):
- company: PK COMPANY#<slug>    SK STATS#<brand>#<state>
- city:    PK CITY#<city_slug>-<state>  SK STATS#<brand>
- state:   PK STATE#<state>     SK STATS#<brand>   (carries the companies map)

Records are flat rows (maps serialized as sorted JSON) so a snapshot can be
compared with the current state using a set difference.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import duckdb
import pandas as pd

from stats_sync.lib.dynamo_size import split_for_ceiling, to_dynamo_item
from stats_sync.lib.s3_path_registry import city_scope_key

logger = logging.getLogger(__name__)

AGGREGATE_COLUMNS = [
    "pk",
    "sk",
    "scope",
    "brand",
    "partition",
    "name",
    "count",
    "total_fines",
    "child_count",
    "breakdown_json",
    "companies_json",
]

_INT_COLUMNS = ("count", "child_count")

# Global connection for warm container reuse
_conn = None


def get_duckdb_connection():
    """Get or create the in-memory DuckDB connection."""
    global _conn
    if _conn is None:
        logger.info("Creating new DuckDB connection")
        _conn = duckdb.connect(":memory:")
        _conn.execute("SET enable_progress_bar=false;")
    return _conn


def dumps_map(value: Dict[str, Any]) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


def empty_aggregate_frame() -> pd.DataFrame:
    frame = pd.DataFrame({column: pd.Series(dtype="object") for column in AGGREGATE_COLUMNS})
    for column in _INT_COLUMNS:
        frame[column] = frame[column].astype("int64")
    frame["total_fines"] = frame["total_fines"].astype("float64")
    return frame


def conform_aggregate_frame(frame: pd.DataFrame) -> pd.DataFrame:
    """Align column order and dtypes so two frames can be diffed."""
    frame = frame.copy()
    for column in AGGREGATE_COLUMNS:
        if column not in frame.columns:
            frame[column] = 0 if column in _INT_COLUMNS else ""
    frame = frame[AGGREGATE_COLUMNS]
    for column in _INT_COLUMNS:
        frame[column] = pd.to_numeric(frame[column], errors="coerce").fillna(0).astype("int64")
    frame["total_fines"] = pd.to_numeric(frame["total_fines"], errors="coerce").fillna(0.0).astype("float64")
    for column in AGGREGATE_COLUMNS:
        if column not in _INT_COLUMNS and column != "total_fines":
            frame[column] = frame[column].fillna("").astype(str)
    return frame.sort_values(["pk", "sk"]).reset_index(drop=True)


_SCOPE_QUERIES = {
    "company": """
        SELECT brand, company_slug AS entity, MAX(company_name) AS name,
               COUNT(*) AS violation_count,
               ROUND(SUM(fine_amount), 2) AS total_fines,
               COUNT(DISTINCT city_slug) AS child_count
        FROM source_rows
        WHERE brand IS NOT NULL AND company_slug IS NOT NULL AND company_slug <> ''
        GROUP BY brand, company_slug
    """,
    "city": """
        SELECT brand, city_slug AS entity, MAX(city) AS name,
               COUNT(*) AS violation_count,
               ROUND(SUM(fine_amount), 2) AS total_fines,
               COUNT(DISTINCT company_slug) AS child_count
        FROM source_rows
        WHERE brand IS NOT NULL AND city_slug IS NOT NULL AND city_slug <> ''
        GROUP BY brand, city_slug
    """,
    "state": """
        SELECT brand, '' AS entity, '' AS name,
               COUNT(*) AS violation_count,
               ROUND(SUM(fine_amount), 2) AS total_fines,
               COUNT(DISTINCT city_slug) AS child_count
        FROM source_rows
        WHERE brand IS NOT NULL
        GROUP BY brand
    """,
}

_ENTITY_COLUMNS = {"company": "company_slug", "city": "city_slug", "state": "''"}


def _breakdowns(conn, scope: str) -> Dict[tuple, Dict[str, int]]:
    entity = _ENTITY_COLUMNS[scope]
    where = "brand IS NOT NULL"
    group_by = "brand, violation_type"
    if scope != "state":
        where += f" AND {entity} IS NOT NULL AND {entity} <> ''"
        group_by = f"brand, {entity}, violation_type"
    rows = conn.execute(f"""
        SELECT brand, {entity} AS entity, violation_type, COUNT(*) AS n
        FROM source_rows
        WHERE {where}
        GROUP BY {group_by}
    """).fetchall()

    breakdowns: Dict[tuple, Dict[str, int]] = {}
    for brand, entity_value, violation_type, n in rows:
        breakdowns.setdefault((brand, entity_value), {})[violation_type] = int(n)
    return breakdowns


def _text(value: Any) -> str:
    if value is None or (isinstance(value, float) and value != value):
        return ""
    return str(value)


def _keys(scope: str, brand: str, entity: str, partition_id: str) -> tuple:
    if scope == "company":
        return f"COMPANY#{entity}", f"STATS#{brand}#{partition_id}"
    if scope == "city":
        return city_scope_key(entity, partition_id), f"STATS#{brand}"
    return f"STATE#{partition_id}", f"STATS#{brand}"


def aggregate_rows(rows: pd.DataFrame, partition_id: str) -> pd.DataFrame:
    """Aggregate one partition's source rows into logical records.

    Args:
        rows: Normalized source rows (see source_reader.SOURCE_COLUMNS)
        partition_id: State code the rows belong to

    Returns:
        DataFrame with AGGREGATE_COLUMNS, ordered by (pk, sk)
    """
    if rows is None or rows.empty:
        return empty_aggregate_frame()

    conn = get_duckdb_connection()
    conn.register("source_rows", rows)
    try:
        results = {scope: conn.execute(sql).fetchdf() for scope, sql in _SCOPE_QUERIES.items()}
        breakdowns = {scope: _breakdowns(conn, scope) for scope in _SCOPE_QUERIES}
    finally:
        conn.unregister("source_rows")

    companies_by_brand: Dict[str, Dict[str, int]] = {}
    for row in results["company"].to_dict("records"):
        companies_by_brand.setdefault(row["brand"], {})[row["entity"]] = int(row["violation_count"])

    records = []
    for scope, frame in results.items():
        for row in frame.to_dict("records"):
            pk, sk = _keys(scope, row["brand"], row["entity"], partition_id)
            companies = companies_by_brand.get(row["brand"], {}) if scope == "state" else None
            records.append({
                "pk": pk,
                "sk": sk,
                "scope": scope,
                "brand": row["brand"],
                "partition": partition_id,
                "name": _text(row["name"]) or (partition_id if scope == "state" else row["entity"]),
                "count": int(row["violation_count"]),
                "total_fines": float(row["total_fines"] or 0.0),
                "child_count": int(row["child_count"]),
                "breakdown_json": dumps_map(breakdowns[scope].get((row["brand"], row["entity"]), {})),
                "companies_json": dumps_map(companies) if companies is not None else "",
            })

    frame = conform_aggregate_frame(pd.DataFrame.from_records(records, columns=AGGREGATE_COLUMNS))
    logger.info(
        f"Aggregated {len(rows)} rows of {partition_id} into {len(frame)} records "
        f"({len(results['company'])} company, {len(results['city'])} city, {len(results['state'])} state)"
    )
    return frame


def diff_aggregates(current: pd.DataFrame, previous: pd.DataFrame) -> pd.DataFrame:
    """Records in ``current`` that are new or changed relative to ``previous``.

    Records only present in ``previous`` are not returned: the read store
    keeps history and never retracts.
    """
    current = conform_aggregate_frame(current)
    if current.empty:
        return current
    if previous is None or previous.empty:
        return current

    previous = conform_aggregate_frame(previous)
    conn = get_duckdb_connection()
    conn.register("current_aggregates", current)
    conn.register("previous_aggregates", previous)
    try:
        delta = conn.execute("""
            SELECT * FROM (
                SELECT * FROM current_aggregates
                EXCEPT
                SELECT * FROM previous_aggregates
            )
            ORDER BY pk, sk
        """).fetchdf()
    finally:
        conn.unregister("current_aggregates")
        conn.unregister("previous_aggregates")

    return conform_aggregate_frame(delta)


def build_store_items(
    record: Dict[str, Any],
    ceiling: int,
    extra: Optional[Dict[str, Any]] = None,
    updated_at: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """Turn one logical record into DynamoDB items.

    State records spill their companies map into ``#COMPANIES#<n>`` chunks
    when the whole item would exceed ``ceiling``.
    """
    base = {
        "PK": record["pk"],
        "SK": record["sk"],
        "record_type": "stats",
        "scope": record["scope"],
        "brand": record["brand"],
        "partition": record["partition"],
        "name": record["name"],
        "count": int(record["count"]),
        "total_fines": float(record["total_fines"]),
        "child_count": int(record["child_count"]),
        "breakdown": json.loads(record["breakdown_json"] or "{}"),
        "last_updated": updated_at or datetime.now(timezone.utc).isoformat(),
    }
    if extra:
        base.update(extra)

    if record["scope"] == "state":
        companies = json.loads(record.get("companies_json") or "{}")
        chunked = split_for_ceiling(companies, base, "companies", ceiling, chunk_suffix="#COMPANIES")
        return [to_dynamo_item(c.item) for c in chunked]
    return [to_dynamo_item(base)]
