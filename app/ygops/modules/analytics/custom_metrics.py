from __future__ import annotations

import ast
import calendar
import logging
import time as _time
from collections import defaultdict
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Any

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from app.ygops.audit import record_event
from app.ygops.db import paginate
from app.ygops.errors import ForbiddenError, NotFoundError, ValidationError
from app.ygops.models import User
from app.ygops.modules.analytics.models import (
    CustomMetricDefinition,
    CustomMetricValue,
    DailyMetric,
    Event,
    MonthlyMetric,
    WeeklyMetric,
)
from app.ygops.modules.analytics.realtime import percentile as nearest_rank
from app.ygops.utils import utcnow

logger = logging.getLogger(__name__)

METRIC_TYPES = ("COUNT", "SUM", "AVERAGE", "DISTINCT_COUNT", "PERCENTILE", "RATIO", "CUSTOM")
VISIBILITIES = ("PRIVATE", "TEAM", "ORGANIZATION", "PUBLIC")
PERIOD_TYPES = ("DAILY", "WEEKLY", "MONTHLY")
AGGREGATES = ("count", "count_distinct", "sum", "avg", "min", "max", "percentile")
MAX_FORMULA_LENGTH = 1000
MAX_FORMULA_DEPTH = 32
HIGH_COST_FORMULA_LENGTH = 500


@dataclass(frozen=True)
class DataSource:
    model: type
    date_column: str
    numeric_fields: tuple[str, ...]
    dimension_fields: tuple[str, ...]

    @property
    def fields(self) -> tuple[str, ...]:
        return self.numeric_fields + self.dimension_fields


_ROLLUP_NUMERIC = (
    "total_views",
    "total_clicks",
    "total_conversions",
    "total_revenue_cents",
    "unique_visitors",
    "total_engagement_time",
    "avg_daily_views",
    "avg_daily_clicks",
    "avg_daily_conversions",
    "avg_daily_revenue_cents",
    "days_in_period",
)
_SCOPE_FIELDS = ("project_id", "ip_asset_id", "license_id")

DATA_SOURCES: dict[str, DataSource] = {
    "events": DataSource(
        Event,
        "occurred_at",
        ("value_cents", "engagement_seconds"),
        ("event_type", "source", "actor_id", "session_id") + _SCOPE_FIELDS,
    ),
    "daily_metrics": DataSource(
        DailyMetric,
        "date",
        ("views", "clicks", "conversions", "revenue_cents", "unique_visitors", "engagement_time"),
        _SCOPE_FIELDS,
    ),
    "weekly_metrics": DataSource(WeeklyMetric, "week_start_date", _ROLLUP_NUMERIC, _SCOPE_FIELDS),
    "monthly_metrics": DataSource(MonthlyMetric, "month_start_date", _ROLLUP_NUMERIC, _SCOPE_FIELDS),
}


# ---------- Formula language ----------
@dataclass
class FormulaAnalysis:
    errors: list[str] = field(default_factory=list)
    aggregates: list[tuple[str, str | None]] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


def formula_depth(tree: ast.AST) -> int:
    """Nesting depth of `tree`, measured without recursion."""
    deepest = 0
    stack = [(tree, 1)]
    while stack:
        node, depth = stack.pop()
        deepest = max(deepest, depth)
        stack.extend((child, depth + 1) for child in ast.iter_child_nodes(node))
    return deepest


def parse_formula(formula: str) -> ast.Expression:
    try:
        tree = ast.parse(formula.strip(), mode="eval")
    except SyntaxError as e:
        raise ValidationError("Formula is not a valid expression", code="INVALID_FORMULA", details={"error": e.msg}) from e
    except (RecursionError, MemoryError) as e:
        raise ValidationError("Formula is nested too deeply", code="INVALID_FORMULA") from e
    if formula_depth(tree) > MAX_FORMULA_DEPTH:
        raise ValidationError("Formula is nested too deeply", code="INVALID_FORMULA", details={"max_depth": MAX_FORMULA_DEPTH})
    return tree


def analyze_formula(formula: str, source: DataSource | None) -> FormulaAnalysis:
    """
    Walk the formula tree and collect errors. Allowed: numeric literals,
    ``+ - * /``, unary sign, parentheses and the aggregate calls in
    `AGGREGATES` whose field arguments are bare names known to `source`.
    """
    out = FormulaAnalysis()
    if not formula or not formula.strip():
        out.errors.append("Formula is required")
        return out
    if len(formula) > MAX_FORMULA_LENGTH:
        out.errors.append(f"Formula exceeds {MAX_FORMULA_LENGTH} characters")
        return out
    try:
        tree = ast.parse(formula.strip(), mode="eval")
    except SyntaxError as e:
        out.errors.append(f"Syntax error: {e.msg}")
        return out
    except (RecursionError, MemoryError):
        out.errors.append(f"Formula nesting exceeds {MAX_FORMULA_DEPTH} levels")
        return out
    if formula_depth(tree) > MAX_FORMULA_DEPTH:
        out.errors.append(f"Formula nesting exceeds {MAX_FORMULA_DEPTH} levels")
        return out

    def field_arg(node: ast.AST, fn: str) -> str | None:
        if not isinstance(node, ast.Name):
            out.errors.append(f"{fn}() expects a field name")
            return None
        if source is not None and node.id not in source.fields:
            out.errors.append(f"Unknown field '{node.id}'")
        elif source is not None and fn in ("sum", "avg", "min", "max", "percentile") and node.id not in source.numeric_fields:
            out.errors.append(f"{fn}() requires a numeric field, got '{node.id}'")
        return node.id

    def walk(node: ast.AST) -> None:
        if isinstance(node, ast.Expression):
            walk(node.body)
        elif isinstance(node, ast.BinOp):
            if not isinstance(node.op, (ast.Add, ast.Sub, ast.Mult, ast.Div)):
                out.errors.append(f"Operator {type(node.op).__name__} is not allowed")
            walk(node.left)
            walk(node.right)
        elif isinstance(node, ast.UnaryOp):
            if not isinstance(node.op, (ast.UAdd, ast.USub)):
                out.errors.append(f"Operator {type(node.op).__name__} is not allowed")
            walk(node.operand)
        elif isinstance(node, ast.Constant):
            if isinstance(node.value, bool) or not isinstance(node.value, (int, float)):
                out.errors.append("Only numeric literals are allowed")
        elif isinstance(node, ast.Call):
            fn = node.func.id if isinstance(node.func, ast.Name) else None
            if fn not in AGGREGATES:
                out.errors.append(f"Unknown function '{fn or ast.dump(node.func)}'")
                return
            if node.keywords:
                out.errors.append(f"{fn}() does not take keyword arguments")
            if fn == "count":
                if node.args:
                    out.errors.append("count() takes no arguments")
                out.aggregates.append((fn, None))
            elif fn == "percentile":
                if len(node.args) != 2:
                    out.errors.append("percentile() expects a field and a percentile")
                    return
                name = field_arg(node.args[0], fn)
                p = node.args[1]
                if not (isinstance(p, ast.Constant) and isinstance(p.value, (int, float)) and 0 <= p.value <= 100):
                    out.errors.append("percentile() percentile must be a number between 0 and 100")
                out.aggregates.append((fn, name))
            else:
                if len(node.args) != 1:
                    out.errors.append(f"{fn}() expects exactly one field")
                    return
                out.aggregates.append((fn, field_arg(node.args[0], fn)))
        elif isinstance(node, ast.Name):
            out.errors.append(f"Bare field '{node.id}' must be wrapped in an aggregate")
        else:
            out.errors.append(f"Unsupported syntax: {type(node).__name__}")

    walk(tree)
    if not out.aggregates and not out.errors:
        out.errors.append("Formula must use at least one aggregate")
    return out


def _aggregate(fn: str, args: list[ast.AST], rows: list[Any]) -> float:
    if fn == "count":
        return float(len(rows))
    name = args[0].id  # type: ignore[attr-defined]
    values = [getattr(r, name) for r in rows]
    if fn == "count_distinct":
        return float(len({v for v in values if v is not None}))
    numbers = [float(v) for v in values if v is not None]
    if fn == "sum":
        return float(sum(numbers))
    if not numbers:
        return 0.0
    if fn == "avg":
        return sum(numbers) / len(numbers)
    if fn == "min":
        return min(numbers)
    if fn == "max":
        return max(numbers)
    return nearest_rank(sorted(numbers), float(args[1].value))  # type: ignore[attr-defined]


def evaluate_formula(tree: ast.AST, rows: list[Any]) -> float:
    """Evaluate a validated formula tree over `rows`. Division by zero yields 0."""
    if isinstance(tree, ast.Expression):
        return evaluate_formula(tree.body, rows)
    if isinstance(tree, ast.Constant):
        return float(tree.value)
    if isinstance(tree, ast.UnaryOp):
        value = evaluate_formula(tree.operand, rows)
        return -value if isinstance(tree.op, ast.USub) else value
    if isinstance(tree, ast.BinOp):
        left = evaluate_formula(tree.left, rows)
        right = evaluate_formula(tree.right, rows)
        if isinstance(tree.op, ast.Add):
            return left + right
        if isinstance(tree.op, ast.Sub):
            return left - right
        if isinstance(tree.op, ast.Mult):
            return left * right
        return left / right if right else 0.0
    if isinstance(tree, ast.Call):
        return _aggregate(tree.func.id, list(tree.args), rows)  # type: ignore[attr-defined]
    raise ValidationError("Unsupported formula node", code="INVALID_FORMULA")


def estimate_cost(formula: str, analysis: FormulaAnalysis, data_source: str, dimensions: list[str]) -> str:
    if len(formula) > HIGH_COST_FORMULA_LENGTH or (data_source == "events" and len(dimensions) > 2):
        return "high"
    if any(fn in ("count_distinct", "percentile") for fn, _ in analysis.aggregates) or data_source == "events":
        return "medium"
    return "low"


def validate_definition(
    *, data_source: str, formula: str, dimensions: list[str] | None = None, filters: dict | None = None
) -> dict[str, Any]:
    errors: list[str] = []
    source = DATA_SOURCES.get(data_source)
    if source is None:
        errors.append(f"Unknown data source '{data_source}'")
    analysis = analyze_formula(formula or "", source)
    errors.extend(analysis.errors)
    dims = list(dimensions or [])
    if source is not None:
        for d in dims:
            if d not in source.dimension_fields:
                errors.append(f"Invalid dimension '{d}'")
        for k, v in (filters or {}).items():
            if k not in source.fields:
                errors.append(f"Invalid filter field '{k}'")
            elif isinstance(v, (dict, list)):
                errors.append(f"Filter '{k}' must be a scalar value")
    return {
        "is_valid": not errors,
        "errors": errors,
        "estimated_cost": estimate_cost(formula or "", analysis, data_source, dims),
    }


# ---------- Periods ----------
def period_bounds(day: date, period_type: str) -> tuple[date, date]:
    if period_type == "DAILY":
        return day, day
    if period_type == "WEEKLY":
        start = day - timedelta(days=day.weekday())
        return start, start + timedelta(days=6)
    if period_type == "MONTHLY":
        return day.replace(day=1), day.replace(day=calendar.monthrange(day.year, day.month)[1])
    raise ValidationError(f"period_type must be one of {', '.join(PERIOD_TYPES)}", code="INVALID_PERIOD_TYPE")


def iter_periods(start: date, end: date, period_type: str) -> Iterator[tuple[date, date]]:
    """Consecutive periods from `start`; the last one is clamped to `end`."""
    if start > end:
        raise ValidationError("start must not be after end", code="INVALID_DATE_RANGE")
    current = start
    while current <= end:
        if period_type == "DAILY":
            period_end = current
        elif period_type == "WEEKLY":
            period_end = current + timedelta(days=6)
        else:
            period_end = period_bounds(current, period_type)[1]
        period_end = min(period_end, end)
        yield current, period_end
        current = period_end + timedelta(days=1)


# ---------- Definitions ----------
def _user_role_names(user: User) -> set[str]:
    return {user.role} | {r.name for r in user.roles}


def can_view(user: User, d: CustomMetricDefinition) -> bool:
    if d.created_by_user_id == user.id or d.visibility in ("PUBLIC", "ORGANIZATION"):
        return True
    if d.visibility == "TEAM":
        return bool(_user_role_names(user) & set(d.allowed_roles or []))
    return False


def get_definition(s: Session, metric_id: int, *, include_deleted: bool = False) -> CustomMetricDefinition:
    d = s.get(CustomMetricDefinition, metric_id)
    if not d or (d.deleted_at is not None and not include_deleted):
        raise NotFoundError("Custom metric not found", code="METRIC_NOT_FOUND")
    return d


def get_visible_definition(s: Session, user: User, metric_id: int) -> CustomMetricDefinition:
    d = get_definition(s, metric_id)
    if not can_view(user, d):
        raise NotFoundError("Custom metric not found", code="METRIC_NOT_FOUND")
    return d


def _ensure_creator(user: User, d: CustomMetricDefinition, action: str) -> None:
    if d.created_by_user_id != user.id:
        raise ForbiddenError(f"Only the creator can {action} this metric", code="METRIC_FORBIDDEN")


def _check_choice(value: str, choices: tuple[str, ...], name: str) -> str:
    value = (value or "").upper()
    if value not in choices:
        raise ValidationError(f"{name} must be one of {', '.join(choices)}", code="INVALID_METRIC_DEFINITION")
    return value


def create_definition(
    s: Session,
    *,
    actor: User,
    name: str,
    data_source: str,
    formula: str,
    metric_type: str = "CUSTOM",
    description: str | None = None,
    dimensions: list[str] | None = None,
    filters: dict | None = None,
    aggregation_method: str | None = None,
    visibility: str = "PRIVATE",
    allowed_roles: list[str] | None = None,
    query_timeout_seconds: int = 30,
    version: int = 1,
    parent_metric_id: int | None = None,
) -> CustomMetricDefinition:
    name = (name or "").strip()
    if not name:
        raise ValidationError("Metric name is required", code="INVALID_METRIC_DEFINITION")
    metric_type = _check_choice(metric_type, METRIC_TYPES, "metric_type")
    visibility = _check_choice(visibility, VISIBILITIES, "visibility")

    result = validate_definition(data_source=data_source, formula=formula, dimensions=dimensions, filters=filters)
    if not result["is_valid"]:
        raise ValidationError(
            "Invalid metric definition", code="INVALID_METRIC_DEFINITION", details={"errors": result["errors"]}
        )

    d = CustomMetricDefinition(
        name=name,
        description=description,
        metric_type=metric_type,
        data_source=data_source,
        calculation_formula=formula.strip(),
        dimensions=list(dimensions or []),
        filters=dict(filters or {}),
        aggregation_method=aggregation_method,
        created_by_user_id=actor.id,
        visibility=visibility,
        allowed_roles=list(allowed_roles or []),
        is_validated=True,
        validation_errors=None,
        estimated_cost=result["estimated_cost"],
        query_timeout_seconds=max(1, int(query_timeout_seconds)),
        version=version,
        parent_metric_id=parent_metric_id,
        is_active=True,
    )
    s.add(d)
    s.flush()
    record_event(
        s,
        actor=actor,
        action="custom_metric.create",
        entity_type="custom_metric",
        entity_id=str(d.id),
        metadata={"name": d.name, "version": d.version, "data_source": d.data_source},
    )
    return d


DEFINITION_FIELDS = (
    "name",
    "description",
    "metric_type",
    "data_source",
    "calculation_formula",
    "dimensions",
    "filters",
    "aggregation_method",
    "visibility",
    "allowed_roles",
    "query_timeout_seconds",
)


def update_definition(s: Session, metric_id: int, *, actor: User, fields: dict[str, Any]) -> CustomMetricDefinition:
    """
    Definitions are immutable: an update stores version n+1 pointing at the
    previous row and deactivates that row.
    """
    old = get_definition(s, metric_id)
    _ensure_creator(actor, old, "update")
    if not old.is_active:
        raise ValidationError("Only the active version can be updated", code="METRIC_INACTIVE")

    merged = {k: getattr(old, k) for k in DEFINITION_FIELDS}
    merged.update({k: v for k, v in fields.items() if k in DEFINITION_FIELDS})
    new = create_definition(
        s,
        actor=actor,
        name=merged["name"],
        data_source=merged["data_source"],
        formula=merged["calculation_formula"],
        metric_type=merged["metric_type"],
        description=merged["description"],
        dimensions=merged["dimensions"],
        filters=merged["filters"],
        aggregation_method=merged["aggregation_method"],
        visibility=merged["visibility"],
        allowed_roles=merged["allowed_roles"],
        query_timeout_seconds=merged["query_timeout_seconds"],
        version=old.version + 1,
        parent_metric_id=old.id,
    )
    new.usage_count = old.usage_count
    old.is_active = False
    s.flush()
    return new


def delete_definition(s: Session, metric_id: int, *, actor: User, now: datetime | None = None) -> CustomMetricDefinition:
    d = get_definition(s, metric_id)
    _ensure_creator(actor, d, "delete")
    d.deleted_at = now or utcnow()
    d.is_active = False
    s.flush()
    record_event(
        s,
        actor=actor,
        action="custom_metric.delete",
        entity_type="custom_metric",
        entity_id=str(d.id),
        metadata={"name": d.name},
    )
    return d


def list_definitions(s: Session, user: User, *, data_source: str | None = None, page: int = 1, per_page: int = 20) -> dict:
    visible = [
        CustomMetricDefinition.created_by_user_id == user.id,
        CustomMetricDefinition.visibility.in_(("PUBLIC", "ORGANIZATION")),
    ]
    stmt = select(CustomMetricDefinition).where(
        CustomMetricDefinition.deleted_at.is_(None),
        CustomMetricDefinition.is_active.is_(True),
    )
    if data_source:
        stmt = stmt.where(CustomMetricDefinition.data_source == data_source)
    # TEAM visibility depends on JSON role lists, so it is resolved after the query.
    candidates = s.scalars(
        stmt.where(or_(*visible, CustomMetricDefinition.visibility == "TEAM")).order_by(
            CustomMetricDefinition.usage_count.desc(), CustomMetricDefinition.created_at.desc()
        )
    ).all()
    ids = [d.id for d in candidates if can_view(user, d)]
    return paginate(
        s,
        select(CustomMetricDefinition)
        .where(CustomMetricDefinition.id.in_(ids))
        .order_by(CustomMetricDefinition.usage_count.desc(), CustomMetricDefinition.created_at.desc()),
        page=page,
        per_page=per_page,
    )


def version_history(s: Session, metric_id: int) -> list[CustomMetricDefinition]:
    d = get_definition(s, metric_id, include_deleted=True)
    chain = [d]
    while chain[-1].parent_metric_id:
        parent = s.get(CustomMetricDefinition, chain[-1].parent_metric_id)
        if parent is None:
            break
        chain.append(parent)
    return chain


# ---------- Calculation ----------
def _load_rows(s: Session, d: CustomMetricDefinition, start: date, end: date) -> list[Any]:
    source = DATA_SOURCES[d.data_source]
    model = source.model
    column = getattr(model, source.date_column)
    if d.data_source == "events":
        stmt = select(model).where(
            column >= datetime.combine(start, time.min), column < datetime.combine(end + timedelta(days=1), time.min)
        )
    else:
        stmt = select(model).where(column >= start, column <= end)
    for k, v in (d.filters or {}).items():
        stmt = stmt.where(getattr(model, k).is_(None) if v is None else getattr(model, k) == v)
    return list(s.scalars(stmt))


def calculate(
    s: Session,
    metric_id: int,
    *,
    start: date,
    end: date,
    period_type: str = "DAILY",
    now: datetime | None = None,
) -> list[CustomMetricValue]:
    """
    Evaluate the definition over [start, end] and store one value per
    dimension group (a single ungrouped value when there are no dimensions).
    """
    d = get_definition(s, metric_id)
    period_type = _check_choice(period_type, PERIOD_TYPES, "period_type")
    tree = parse_formula(d.calculation_formula)
    started = _time.monotonic()

    rows = _load_rows(s, d, start, end)
    dims = list(d.dimensions or [])
    groups: dict[tuple, list[Any]] = defaultdict(list)
    if dims:
        for r in rows:
            groups[tuple(getattr(r, k) for k in dims)].append(r)
    else:
        groups[()] = rows

    now = now or utcnow()
    values: list[CustomMetricValue] = []
    for key, group_rows in groups.items():
        value = evaluate_formula(tree, group_rows)
        elapsed_ms = int((_time.monotonic() - started) * 1000)
        v = CustomMetricValue(
            metric_definition_id=d.id,
            period_type=period_type,
            period_start_date=datetime.combine(start, time.min),
            period_end_date=datetime.combine(end, time.max.replace(microsecond=0)),
            dimension_values={k: (str(x) if x is not None else None) for k, x in zip(dims, key)},
            metric_value=round(value, 6),
            metric_value_string=f"{value:.4f}".rstrip("0").rstrip("."),
            calculation_duration_ms=elapsed_ms,
            record_count=len(group_rows),
            calculated_at=now,
        )
        s.add(v)
        values.append(v)

    elapsed = _time.monotonic() - started
    if elapsed > d.query_timeout_seconds:
        logger.warning("Custom metric %s took %.1fs (timeout %ss)", d.id, elapsed, d.query_timeout_seconds)
    d.usage_count = (d.usage_count or 0) + 1
    d.last_calculated_at = now
    s.flush()
    return values


def backfill(
    s: Session, metric_id: int, *, start: date, end: date, period_type: str = "DAILY", now: datetime | None = None
) -> int:
    period_type = _check_choice(period_type, PERIOD_TYPES, "period_type")
    count = 0
    for period_start, period_end in iter_periods(start, end, period_type):
        calculate(s, metric_id, start=period_start, end=period_end, period_type=period_type, now=now)
        count += 1
    logger.info("Backfilled custom metric %s: %s %s periods", metric_id, count, period_type.lower())
    return count


def get_values(
    s: Session, metric_id: int, *, start: date | None = None, end: date | None = None, period_type: str | None = None
) -> list[CustomMetricValue]:
    stmt = select(CustomMetricValue).where(CustomMetricValue.metric_definition_id == metric_id)
    if start:
        stmt = stmt.where(CustomMetricValue.period_start_date >= datetime.combine(start, time.min))
    if end:
        stmt = stmt.where(CustomMetricValue.period_end_date <= datetime.combine(end, time.max))
    if period_type:
        stmt = stmt.where(CustomMetricValue.period_type == period_type.upper())
    return list(s.scalars(stmt.order_by(CustomMetricValue.period_start_date.asc(), CustomMetricValue.id.asc())))
