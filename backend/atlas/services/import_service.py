"""Import service for merging parsed tables into a sheet"""
from typing import Any, Dict, Iterable, List, Optional
from pydantic import BaseModel, Field
import csv
import io
import json
import logging
import math
import re
import time

from atlas.models.grid import ROW_ID_KEY, AgentProvider, ColumnDefinition, ColumnType, Row, SheetTab
from atlas.services.ai_service import AIService, parse_agent_response
from atlas.services.grid_store import GridStore
from atlas.config import settings

logger = logging.getLogger(__name__)

MATCH_THRESHOLD = 0.5
NUMERIC_SHARE = 0.8


class ParsedTable(BaseModel):
    """Headers and rows handed over by the file parser"""
    headers: List[str]
    rows: List[Dict[str, Any]] = Field(default_factory=list)


class HeaderMatch(BaseModel):
    source_header: str
    target_header: Optional[str] = None
    confidence: float = 0.0
    reason: Optional[str] = None


class ColumnMapping(BaseModel):
    """What to do with one source header"""
    action: str = "new"  # 'existing' | 'new' | 'ignore'
    target_column_id: Optional[str] = None


class ImportResult(BaseModel):
    sheet_id: str
    rows_imported: int
    columns_created: List[str] = Field(default_factory=list)
    mapping: Dict[str, ColumnMapping] = Field(default_factory=dict)


def normalize_header(header: str) -> str:
    """Strip BOM, trim, collapse whitespace, lowercase"""
    return re.sub(r"\s+", " ", (header or "").lstrip("\ufeff").strip()).lower()


def create_column_id(header: str, taken: Iterable[str] = ()) -> str:
    """Snake-case id from a header, suffixed until it is unused"""
    taken = set(taken)
    base = re.sub(r"[^a-z0-9]+", "_", normalize_header(header)).strip("_")
    if not base:
        base = f"field_{int(time.time() * 1000)}"
    candidate = base
    suffix = 1
    while candidate in taken or candidate == ROW_ID_KEY:
        suffix += 1
        candidate = f"{base}_{suffix}"
    return candidate


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    try:
        number = float(str(value).strip())
    except ValueError:
        return None
    return number if math.isfinite(number) else None


def infer_column_type(values: Iterable[Any]) -> ColumnType:
    """NUMBER when at least 80% of the non-empty values are numeric"""
    total = 0
    numeric = 0
    for value in values:
        if value is None or value == "":
            continue
        total += 1
        if _as_number(value) is not None:
            numeric += 1
    if total and numeric / total >= NUMERIC_SHARE:
        return ColumnType.NUMBER
    return ColumnType.TEXT


def coerce_cell_value(value: Any, column_type: ColumnType) -> Any:
    if value is None:
        return 0 if column_type == ColumnType.NUMBER else ""
    if column_type == ColumnType.NUMBER:
        number = _as_number(value)
        if number is None:
            return 0
        return int(number) if number.is_integer() else number
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def dedupe_headers(headers: List[str]) -> List[str]:
    """Suffix repeated headers with ' (2)', ' (3)', ..."""
    seen: Dict[str, int] = {}
    result = []
    for header in headers:
        trimmed = header.strip()
        key = normalize_header(trimmed)
        seen[key] = seen.get(key, 0) + 1
        result.append(trimmed if seen[key] == 1 else f"{trimmed} ({seen[key]})")
    return result


def build_table(headers: List[str], rows: List[List[Any]]) -> ParsedTable:
    """ParsedTable from a header row and positional data rows"""
    positions = [i for i, h in enumerate(headers) if h and h.strip()]
    unique = dedupe_headers([headers[i] for i in positions])
    records = []
    for values in rows:
        record = {
            header: (values[i] if i < len(values) else None)
            for i, header in zip(positions, unique)
        }
        if any(v not in (None, "") for v in record.values()):
            records.append(record)
    return ParsedTable(headers=unique, rows=records)


def parse_csv_text(text: str, delimiter: str = ",") -> ParsedTable:
    """ParsedTable from CSV text whose first line is the header row"""
    lines = list(csv.reader(io.StringIO(text.lstrip("\ufeff")), delimiter=delimiter))
    if not lines:
        return ParsedTable(headers=[])
    return build_table(lines[0], lines[1:])


def _score_match(source: str, target: str) -> float:
    a, b = normalize_header(source), normalize_header(target)
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0
    if a in b or b in a:
        return 0.7
    return 0.0


def simple_header_match(source_headers: List[str], target_headers: List[str]) -> List[HeaderMatch]:
    """Best normalized match per source header; below 0.5 means no match"""
    matches = []
    for source in source_headers:
        best_header, best_score = None, 0.0
        for target in target_headers:
            score = _score_match(source, target)
            if score > best_score:
                best_header, best_score = target, score
        confident = best_score >= MATCH_THRESHOLD
        matches.append(HeaderMatch(
            source_header=source,
            target_header=best_header if confident else None,
            confidence=best_score,
            reason="Normalized match" if confident else "No confident match",
        ))
    return matches


class ImportService:
    """Service for importing parsed tables into sheets"""

    def __init__(self, store: GridStore, ai_service: Optional[AIService] = None):
        self.store = store
        self.ai_service = ai_service

    async def match_headers(
        self,
        source_headers: List[str],
        target_headers: List[str],
        use_llm: bool = True
    ) -> List[HeaderMatch]:
        """
        Match uploaded headers to a sheet's headers

        Args:
            source_headers: Headers from the file
            target_headers: Existing column headers
            use_llm: Ask a configured provider first

        Returns:
            One HeaderMatch per source header. Falls back to normalized
            matching when no provider is configured or every provider fails.
        """
        if not use_llm or not target_headers or self.ai_service is None:
            return simple_header_match(source_headers, target_headers)

        prompt = "\n".join([
            "Match uploaded headers to existing headers.",
            'Return JSON with key "matches" as an array of objects:',
            '{ "sourceHeader": string, "targetHeader": string | null, "confidence": number, "reason": string }',
            "Only choose a targetHeader from the provided existing list.",
            "If there is no confident match, return null for targetHeader.",
            "",
            f"Uploaded headers: {json.dumps(source_headers)}",
            f"Existing headers: {json.dumps(target_headers)}",
        ])
        system = "You are a data mapping assistant. Return a single valid JSON object only."

        providers = []
        if settings.gemini_enabled:
            providers.append(AgentProvider.GOOGLE)
        if self.ai_service.anthropic_client:
            providers.append(AgentProvider.ANTHROPIC)
        if self.ai_service.openai_client:
            providers.append(AgentProvider.OPENAI)

        for provider in providers:
            try:
                raw = await self.ai_service.complete(provider, None, prompt, system)
            except Exception as e:
                logger.warning(f"Header matching with {provider.value} failed: {e}")
                continue

            matches = parse_agent_response(raw).get("matches")
            if not isinstance(matches, list) or not matches:
                break
            allowed = set(target_headers)
            return [
                HeaderMatch(
                    source_header=m.get("sourceHeader", ""),
                    target_header=m.get("targetHeader") if m.get("targetHeader") in allowed else None,
                    confidence=m.get("confidence") if isinstance(m.get("confidence"), (int, float)) else 0.0,
                    reason=m.get("reason"),
                )
                for m in matches if isinstance(m, dict)
            ]

        return simple_header_match(source_headers, target_headers)

    def default_mapping(self, table: ParsedTable, sheet: SheetTab) -> Dict[str, ColumnMapping]:
        """Map every header to a matching column, or to a new one"""
        by_header = {c.header: c.id for c in sheet.columns}
        mapping = {}
        for match in simple_header_match(table.headers, list(by_header)):
            if match.target_header:
                mapping[match.source_header] = ColumnMapping(
                    action="existing", target_column_id=by_header[match.target_header]
                )
            else:
                mapping[match.source_header] = ColumnMapping(action="new")
        return mapping

    def import_table(
        self,
        vertical_id: str,
        sheet_id: str,
        table: ParsedTable,
        mapping: Optional[Dict[str, ColumnMapping]] = None
    ) -> ImportResult:
        """
        Merge a parsed table into a sheet

        New columns get collision-free ids and an inferred type; values are
        coerced to their column's type. The store recalculates once after
        the whole batch is merged.
        """
        sheet = self.store.get_sheet(vertical_id, sheet_id)
        mapping = mapping or self.default_mapping(table, sheet)

        taken = [c.id for c in sheet.columns]
        new_columns: List[ColumnDefinition] = []
        targets: Dict[str, ColumnDefinition] = {}

        for header in table.headers:
            rule = mapping.get(header, ColumnMapping(action="ignore"))
            if rule.action == "existing":
                column = sheet.get_column(rule.target_column_id or "")
                if column is None:
                    logger.warning(f"Import mapping for {header!r} points at missing column {rule.target_column_id}")
                    continue
                targets[header] = column
            elif rule.action == "new":
                column_id = create_column_id(header, taken)
                taken.append(column_id)
                column = ColumnDefinition(
                    id=column_id,
                    header=header,
                    type=infer_column_type(r.get(header) for r in table.rows),
                )
                new_columns.append(column)
                targets[header] = column

        stamp = int(time.time() * 1000)
        existing_ids = {r.get(ROW_ID_KEY) for r in sheet.rows}
        rows: List[Row] = []
        for index, record in enumerate(table.rows):
            row_id = f"row-{stamp}-{index}"
            while row_id in existing_ids:
                row_id = f"{row_id}_"
            row: Row = {ROW_ID_KEY: row_id}
            for header, column in targets.items():
                row[column.id] = coerce_cell_value(record.get(header), column.type)
            rows.append(row)

        self.store.apply_import(vertical_id, sheet_id, new_columns, rows)
        logger.info(f"Imported {len(rows)} rows into sheet {sheet_id} ({len(new_columns)} new columns)")
        return ImportResult(
            sheet_id=sheet_id,
            rows_imported=len(rows),
            columns_created=[c.id for c in new_columns],
            mapping=mapping,
        )
