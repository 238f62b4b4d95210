"""
SQL guardrails for Facility Monitor.

This module provides validation and security checks for caller-supplied SQL
that bypasses the structured query builder (admin queries, AI agent tools).
"""
import re
import logging
from typing import List, Tuple

logger = logging.getLogger(__name__)

# Never allowed, whatever the executor options
PRIVILEGE_KEYWORDS = ["GRANT", "REVOKE", "EXECUTE", "COPY"]

SCHEMA_KEYWORDS = ["CREATE", "ALTER", "DROP", "RENAME", "TRUNCATE"]

DATA_MODIFICATION_PATTERNS = {
    "INSERT INTO": r"\bINSERT\s+INTO\b",
    "UPDATE": r"\bUPDATE\b",
    "DELETE FROM": r"\bDELETE\s+FROM\b",
    "MERGE INTO": r"\bMERGE\s+INTO\b",
}

# SQL comment patterns to reject
COMMENT_PATTERNS = [
    r"--.*?$",  # Single line comments
    r"/\*.*?\*/",  # Multi-line comments
]

# Function calls whose arguments use FROM without naming a table
_FROM_FUNCTIONS = re.compile(r"\b(?:EXTRACT|SUBSTRING|TRIM|OVERLAY)\s*\([^)]*\)", re.IGNORECASE)
_TABLE_REFERENCE = re.compile(
    r'\b(?:FROM|JOIN)\s+((?:"?[A-Za-z_]\w*"?\.)?"?[A-Za-z_]\w*"?)',
    re.IGNORECASE
)
_CTE_NAME = re.compile(r'(?:\bWITH|,)\s*(?:RECURSIVE\s+)?"?([A-Za-z_]\w*)"?\s+AS\s*\(', re.IGNORECASE)
_TRAILING_LIMIT = re.compile(r'\bLIMIT\s+(\d+)(\s+OFFSET\s+\d+)?\s*$', re.IGNORECASE)


def extract_sql_query(input_text: str) -> str:
    """
    Extract the SQL query from input text.
    Strips markdown code fences and any prose before the first statement.

    Args:
        input_text: Text that may contain a SQL query

    Returns:
        Extracted SQL query or the stripped text if no query is found
    """
    if not input_text:
        return ""
    text = input_text.replace("```sql", "```").strip()
    fenced = re.search(r"```(.*?)```", text, re.DOTALL)
    if fenced:
        text = fenced.group(1).strip()

    match = re.search(r"\b(SELECT|WITH|INSERT|UPDATE|DELETE)\b.*", text, re.IGNORECASE | re.DOTALL)
    if match:
        return match.group(0).strip()
    return text


def _strip_terminator(sql: str) -> str:
    return re.sub(r"[\s;]+$", "", sql.strip())


def validate_sql(
    sql: str,
    allow_modification: bool = False,
    allow_schema_modification: bool = False,
) -> Tuple[bool, str]:
    """
    Validate SQL query against security guardrails.

    Args:
        sql: The SQL query to validate
        allow_modification: Permit INSERT/UPDATE/DELETE statements
        allow_schema_modification: Permit DDL statements

    Returns:
        Tuple of (is_valid, error_message)
    """
    sql = _strip_terminator(str(sql or ""))
    if not sql:
        return False, "SQL query is empty"

    logger.debug("Validating SQL: %s%s", sql[:100], '...' if len(sql) > 100 else '')

    # Check for SQL comments
    for pattern in COMMENT_PATTERNS:
        if re.search(pattern, sql, re.MULTILINE | re.DOTALL):
            return False, "SQL contains comments, which are not allowed"

    if ";" in sql:
        return False, "Multiple SQL statements are not allowed"

    for keyword in PRIVILEGE_KEYWORDS:
        if re.search(r'\b' + keyword + r'\b', sql, re.IGNORECASE):
            return False, f"SQL contains forbidden keyword: {keyword}"

    if not allow_schema_modification:
        for keyword in SCHEMA_KEYWORDS:
            if re.search(r'\b' + keyword + r'\b', sql, re.IGNORECASE):
                return False, f"Schema modification is not allowed: {keyword}"

    if not allow_modification:
        for label, pattern in DATA_MODIFICATION_PATTERNS.items():
            if re.search(pattern, sql, re.IGNORECASE):
                return False, f"Data modification is not allowed: {label}"
        if not re.match(r'^\s*(SELECT|WITH)\b', sql, re.IGNORECASE):
            return False, "SQL must start with SELECT or WITH"

    return True, ""


def is_read_only(sql: str) -> bool:
    return bool(re.match(r'^\s*(SELECT|WITH)\b', sql or "", re.IGNORECASE))


def referenced_tables(sql: str) -> List[str]:
    """
    List the tables named after FROM and JOIN, excluding CTE names.

    Schema-qualified names are reduced to the table part.
    """
    cleaned = _FROM_FUNCTIONS.sub("", sql or "")
    cte_names = {name.lower() for name in _CTE_NAME.findall(cleaned)}
    tables = []
    for reference in _TABLE_REFERENCE.findall(cleaned):
        name = reference.replace('"', '').split(".")[-1]
        if name.lower() in cte_names or name.lower() in ("select", "lateral"):
            continue
        if name not in tables:
            tables.append(name)
    return tables


def enforce_limit(sql: str, max_rows: int) -> str:
    """
    Make sure a read query returns at most max_rows rows.

    A trailing numeric LIMIT above max_rows is lowered; otherwise the query is
    wrapped in an outer SELECT carrying the limit.
    """
    sql = _strip_terminator(sql)
    match = _TRAILING_LIMIT.search(sql)
    if match:
        if int(match.group(1)) <= max_rows:
            return sql
        return sql[:match.start(1)] + str(max_rows) + sql[match.end(1):]
    return f"SELECT * FROM ({sql}) AS limited_result LIMIT {int(max_rows)}"
