"""Table descriptors for the application's on-disk schema.

This is the persisted contract: the reconciler brings every table up to
these shapes, and the column-removal engine uses the same descriptors to
decide whether a table that lost its primary key can be rebuilt safely.
Timestamps are stored as ISO-8601 text.
"""

from __future__ import annotations

from dbwarden.storage.reconciler import ColumnDef, IndexDef, TableModel


def _id_column() -> ColumnDef:
    return ColumnDef("id", "INTEGER", primary_key=True, autoincrement=True)


def _timestamps() -> tuple[ColumnDef, ...]:
    return (
        ColumnDef("created_at", "TEXT"),
        ColumnDef("updated_at", "TEXT"),
        ColumnDef("deleted_at", "TEXT"),
    )


def _run_state(status_default: str = "'pending'") -> tuple[ColumnDef, ...]:
    return (
        ColumnDef("status", "TEXT", not_null=True, default=status_default),
        ColumnDef("started_at", "TEXT"),
        ColumnDef("completed_at", "TEXT"),
        ColumnDef("duration", "INTEGER"),
        ColumnDef("error_message", "TEXT"),
    )


REVIEWS = TableModel(
    name="reviews",
    columns=(
        ColumnDef("id", "TEXT", primary_key=True),
        *_timestamps(),
        ColumnDef("ref", "TEXT", not_null=True),
        ColumnDef("commit_sha", "TEXT"),
        ColumnDef("pr_number", "INTEGER"),
        ColumnDef("pr_url", "TEXT"),
        ColumnDef("repo_url", "TEXT", not_null=True),
        ColumnDef("repo_path", "TEXT"),
        ColumnDef("source", "TEXT", not_null=True, default="'cli'"),
        ColumnDef("triggered_by", "TEXT"),
        *_run_state(),
        ColumnDef("current_rule_index", "INTEGER", default="0"),
        ColumnDef("retry_count", "INTEGER", not_null=True, default="0"),
        ColumnDef("branch_created_at", "TEXT"),
        ColumnDef("merged_at", "TEXT"),
        ColumnDef("author", "TEXT"),
        ColumnDef("revision_count", "INTEGER", default="1"),
        ColumnDef("commit_count", "INTEGER", default="0"),
        ColumnDef("lines_added", "INTEGER", default="0"),
        ColumnDef("lines_deleted", "INTEGER", default="0"),
        ColumnDef("files_changed", "INTEGER", default="0"),
    ),
    indexes=(
        IndexDef("idx_reviews_commit_sha", ("commit_sha",)),
        IndexDef("idx_reviews_pr_number", ("pr_number",)),
        IndexDef("idx_reviews_repo_url", ("repo_url",)),
        IndexDef("idx_reviews_status", ("status",)),
        IndexDef("idx_pr_url_commit", ("pr_url", "commit_sha"), unique=True),
        IndexDef("idx_reviews_deleted_at", ("deleted_at",)),
    ),
)

REVIEW_RULES = TableModel(
    name="review_rules",
    columns=(
        _id_column(),
        *_timestamps(),
        ColumnDef("review_id", "TEXT", not_null=True),
        ColumnDef("rule_index", "INTEGER", not_null=True),
        ColumnDef("rule_id", "TEXT", not_null=True),
        ColumnDef("rule_config", "TEXT"),
        *_run_state(),
        ColumnDef("multi_run_enabled", "INTEGER", default="0"),
        ColumnDef("multi_run_runs", "INTEGER", default="1"),
        ColumnDef("current_run_index", "INTEGER", default="0"),
        ColumnDef("findings_count", "INTEGER", default="0"),
        ColumnDef("prompt", "TEXT"),
        ColumnDef("retry_count", "INTEGER", default="0"),
    ),
    indexes=(
        IndexDef("idx_review_rules_review_id", ("review_id",)),
        IndexDef("idx_review_rules_rule_id", ("rule_id",)),
        IndexDef("idx_review_rules_status", ("status",)),
        IndexDef("idx_review_rules_deleted_at", ("deleted_at",)),
    ),
)

REVIEW_RULE_RUNS = TableModel(
    name="review_rule_runs",
    columns=(
        _id_column(),
        *_timestamps(),
        ColumnDef("review_rule_id", "INTEGER", not_null=True),
        ColumnDef("run_index", "INTEGER", not_null=True),
        ColumnDef("model", "TEXT"),
        ColumnDef("agent", "TEXT", not_null=True),
        *_run_state(),
        ColumnDef("findings_count", "INTEGER", default="0"),
    ),
    indexes=(
        IndexDef("idx_review_rule_runs_review_rule_id", ("review_rule_id",)),
        IndexDef("idx_review_rule_runs_status", ("status",)),
        IndexDef("idx_review_rule_runs_deleted_at", ("deleted_at",)),
    ),
)

REPOSITORY_REVIEW_CONFIGS = TableModel(
    name="repository_review_configs",
    columns=(
        _id_column(),
        *_timestamps(),
        ColumnDef("repo_url", "TEXT", not_null=True),
        ColumnDef("review_file", "TEXT"),
        ColumnDef("description", "TEXT"),
    ),
    indexes=(
        IndexDef("idx_repository_review_configs_repo_url", ("repo_url",), unique=True),
        IndexDef("idx_repository_review_configs_deleted_at", ("deleted_at",)),
    ),
)

REPORTS = TableModel(
    name="reports",
    columns=(
        ColumnDef("id", "TEXT", primary_key=True),
        *_timestamps(),
        ColumnDef("repo_url", "TEXT", not_null=True),
        ColumnDef("ref", "TEXT", not_null=True),
        ColumnDef("repo_path", "TEXT"),
        ColumnDef("report_type", "TEXT", not_null=True),
        ColumnDef("title", "TEXT"),
        *_run_state(),
        ColumnDef("structure", "TEXT"),
        ColumnDef("total_sections", "INTEGER", default="0"),
        ColumnDef("current_section", "INTEGER", default="0"),
        ColumnDef("content", "TEXT"),
        ColumnDef("summary", "TEXT"),
        ColumnDef("agent", "TEXT"),
        ColumnDef("retry_count", "INTEGER", default="0"),
    ),
    indexes=(
        IndexDef("idx_reports_repo_url", ("repo_url",)),
        IndexDef("idx_reports_report_type", ("report_type",)),
        IndexDef("idx_reports_status", ("status",)),
        IndexDef("idx_reports_created_at", ("created_at",)),
        IndexDef("idx_reports_deleted_at", ("deleted_at",)),
    ),
)

REPORT_SECTIONS = TableModel(
    name="report_sections",
    columns=(
        _id_column(),
        *_timestamps(),
        ColumnDef("report_id", "TEXT", not_null=True, references="reports(id)"),
        ColumnDef("section_index", "INTEGER", not_null=True),
        ColumnDef("section_id", "TEXT", not_null=True),
        ColumnDef("parent_section_id", "TEXT"),
        ColumnDef("is_leaf", "INTEGER", default="1"),
        ColumnDef("title", "TEXT"),
        ColumnDef("description", "TEXT"),
        ColumnDef("content", "TEXT"),
        ColumnDef("summary", "TEXT"),
        *_run_state(),
        ColumnDef("retry_count", "INTEGER", default="0"),
    ),
    indexes=(
        IndexDef("idx_report_sections_report_id", ("report_id",)),
        IndexDef("idx_report_sections_parent_section_id", ("parent_section_id",)),
        IndexDef("idx_report_sections_status", ("status",)),
        IndexDef("idx_report_sections_deleted_at", ("deleted_at",)),
    ),
)

SYSTEM_SETTINGS = TableModel(
    name="system_settings",
    columns=(
        _id_column(),
        *_timestamps(),
        ColumnDef("category", "TEXT", not_null=True),
        ColumnDef("key", "TEXT", not_null=True),
        ColumnDef("value", "TEXT", not_null=True),
        ColumnDef("value_type", "TEXT", not_null=True, default="'string'"),
    ),
    indexes=(
        IndexDef("idx_system_settings_category", ("category",)),
        IndexDef("idx_category_key", ("category", "key"), unique=True),
        IndexDef("idx_system_settings_deleted_at", ("deleted_at",)),
    ),
)

ALL_MODELS: tuple[TableModel, ...] = (
    REPOSITORY_REVIEW_CONFIGS,
    REVIEWS,
    REVIEW_RULES,
    REVIEW_RULE_RUNS,
    REPORTS,
    REPORT_SECTIONS,
    SYSTEM_SETTINGS,
)


def models_by_table(models=ALL_MODELS) -> dict[str, TableModel]:
    return {m.name: m for m in models}


def index_map(models=ALL_MODELS) -> dict[str, list[IndexDef]]:
    """Secondary indexes per table, used to rebuild indexes after a copy-and-swap."""
    return {m.name: list(m.indexes) for m in models}
