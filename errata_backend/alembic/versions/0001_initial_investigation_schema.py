"""Initial investigation schema: posts, content identity, investigations, audit, queue

Revision ID: initial_investigation_schema
Revises:
Create Date: 2026-02-02 09:00:00.000000
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = 'initial_investigation_schema'
down_revision = None
branch_labels = None
depends_on = None


def _uuid_pk():
    return sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()'))


def _uuid_fk(name, target, ondelete=None, nullable=False, unique=False):
    return sa.Column(
        name,
        postgresql.UUID(as_uuid=True),
        sa.ForeignKey(target, ondelete=ondelete),
        nullable=nullable,
        unique=unique,
    )


def _timestamp(name, nullable=True):
    if nullable:
        return sa.Column(name, sa.DateTime(timezone=True))
    return sa.Column(name, sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())


def _enum_check(column, values):
    quoted = ", ".join(f"'{value}'" for value in values)
    return f"{column} IN ({quoted})"


PLATFORMS = ('LESSWRONG', 'X', 'SUBSTACK', 'WIKIPEDIA')
CHECK_STATUSES = ('PENDING', 'PROCESSING', 'COMPLETE', 'FAILED')
PROVENANCES = ('SERVER_VERIFIED', 'CLIENT_FALLBACK')
PROVIDERS = ('ANTHROPIC', 'OPENAI')
ATTEMPT_OUTCOMES = ('SUCCEEDED', 'FAILED')
JOB_STATUSES = ('pending', 'retry', 'running', 'done', 'failed')


def upgrade():
    bind = op.get_bind()
    inspector = sa.inspect(bind)
    existing_tables = set(inspector.get_table_names())

    if 'posts' not in existing_tables:
        op.create_table(
            'posts',
            _uuid_pk(),
            sa.Column('platform', sa.String(32), nullable=False),
            sa.Column('external_id', sa.Text, nullable=False),
            sa.Column('url', sa.Text, nullable=False),
            _timestamp('created_at', nullable=False),
            _timestamp('updated_at', nullable=False),
            sa.UniqueConstraint('platform', 'external_id', name='uq_posts_platform_external_id'),
            sa.CheckConstraint(_enum_check('platform', PLATFORMS), name='platform'),
        )

    if 'content_blobs' not in existing_tables:
        op.create_table(
            'content_blobs',
            _uuid_pk(),
            sa.Column('content_hash', sa.String(64), nullable=False, unique=True),
            sa.Column('content_text', sa.Text, nullable=False),
            sa.Column('word_count', sa.Integer, nullable=False),
            _timestamp('created_at', nullable=False),
        )

    if 'image_occurrence_sets' not in existing_tables:
        op.create_table(
            'image_occurrence_sets',
            _uuid_pk(),
            sa.Column('occurrences_hash', sa.String(64), nullable=False, unique=True),
            _timestamp('created_at', nullable=False),
        )

    if 'image_occurrences' not in existing_tables:
        op.create_table(
            'image_occurrences',
            _uuid_pk(),
            _uuid_fk('occurrence_set_id', 'image_occurrence_sets.id', ondelete='CASCADE'),
            sa.Column('original_index', sa.Integer, nullable=False),
            sa.Column('normalized_text_offset', sa.Integer, nullable=False),
            sa.Column('source_url', sa.Text, nullable=False),
            sa.Column('caption_text', sa.Text),
            sa.UniqueConstraint('occurrence_set_id', 'original_index', name='uq_image_occurrences_set_index'),
            sa.CheckConstraint('original_index >= 0', name='image_occurrence_index_non_negative'),
            sa.CheckConstraint('normalized_text_offset >= 0', name='image_occurrence_offset_non_negative'),
        )

    if 'post_versions' not in existing_tables:
        op.create_table(
            'post_versions',
            _uuid_pk(),
            _uuid_fk('post_id', 'posts.id', ondelete='CASCADE'),
            sa.Column('version_hash', sa.String(64), nullable=False),
            _uuid_fk('content_blob_id', 'content_blobs.id'),
            _uuid_fk('image_occurrence_set_id', 'image_occurrence_sets.id'),
            sa.Column('content_provenance', sa.String(32), nullable=False),
            sa.Column('fetch_failure_reason', sa.Text),
            _timestamp('server_verified_at'),
            _timestamp('first_seen_at', nullable=False),
            _timestamp('last_seen_at', nullable=False),
            sa.Column('seen_count', sa.Integer, nullable=False, server_default='1'),
            sa.UniqueConstraint('post_id', 'version_hash', name='uq_post_versions_post_version_hash'),
            sa.CheckConstraint(_enum_check('content_provenance', PROVENANCES), name='content_provenance'),
            sa.CheckConstraint(
                "(content_provenance = 'SERVER_VERIFIED' AND fetch_failure_reason IS NULL) "
                "OR (content_provenance = 'CLIENT_FALLBACK' AND fetch_failure_reason IS NOT NULL)",
                name='post_version_provenance_reason',
            ),
            sa.CheckConstraint('seen_count >= 1', name='post_version_seen_count_positive'),
        )

    if 'prompts' not in existing_tables:
        op.create_table(
            'prompts',
            _uuid_pk(),
            sa.Column('version', sa.Text, nullable=False, unique=True),
            sa.Column('prompt_hash', sa.String(64), nullable=False, unique=True),
            sa.Column('text', sa.Text, nullable=False),
            _timestamp('created_at', nullable=False),
        )

    if 'investigations' not in existing_tables:
        op.create_table(
            'investigations',
            _uuid_pk(),
            _uuid_fk('post_id', 'posts.id', ondelete='CASCADE'),
            sa.Column('content_hash', sa.String(64), sa.ForeignKey('content_blobs.content_hash'), nullable=False),
            _uuid_fk('post_version_id', 'post_versions.id', ondelete='SET NULL', nullable=True),
            sa.Column('status', sa.String(32), nullable=False),
            _uuid_fk('prompt_id', 'prompts.id'),
            sa.Column('provider', sa.String(32), nullable=False),
            sa.Column('model', sa.Text, nullable=False),
            _uuid_fk('parent_investigation_id', 'investigations.id', ondelete='SET NULL', nullable=True),
            sa.Column('content_diff', sa.Text),
            _timestamp('checked_at'),
            sa.Column('model_version', sa.Text),
            _timestamp('created_at', nullable=False),
            _timestamp('updated_at', nullable=False),
            sa.UniqueConstraint('post_id', 'content_hash', name='uq_investigations_post_content_hash'),
            sa.CheckConstraint(_enum_check('status', CHECK_STATUSES), name='check_status'),
            sa.CheckConstraint(_enum_check('provider', PROVIDERS), name='investigation_provider'),
            sa.CheckConstraint(
                "status != 'COMPLETE' OR checked_at IS NOT NULL",
                name='investigation_complete_has_checked_at',
            ),
        )

    if 'investigation_runs' not in existing_tables:
        op.create_table(
            'investigation_runs',
            _uuid_pk(),
            _uuid_fk('investigation_id', 'investigations.id', ondelete='CASCADE', unique=True),
            sa.Column('lease_owner', sa.Text),
            _timestamp('lease_expires_at'),
            _timestamp('recover_after_at'),
            _timestamp('queued_at'),
            _timestamp('started_at'),
            _timestamp('heartbeat_at'),
            _timestamp('created_at', nullable=False),
            _timestamp('updated_at', nullable=False),
        )

    if 'investigation_attempts' not in existing_tables:
        op.create_table(
            'investigation_attempts',
            _uuid_pk(),
            _uuid_fk('investigation_id', 'investigations.id', ondelete='CASCADE'),
            sa.Column('attempt_number', sa.Integer, nullable=False),
            sa.Column('outcome', sa.String(32), nullable=False),
            _timestamp('started_at', nullable=False),
            _timestamp('completed_at', nullable=False),
            sa.Column('request_model', sa.Text, nullable=False),
            sa.Column('request_instructions', sa.Text, nullable=False),
            sa.Column('request_input', sa.Text, nullable=False),
            sa.Column('request_max_output_tokens', sa.Integer),
            sa.Column('response_id', sa.Text),
            sa.Column('response_status', sa.Text),
            sa.Column('response_model_version', sa.Text),
            sa.Column('response_output_text', sa.Text),
            sa.Column('response_output_items', postgresql.JSONB),
            sa.UniqueConstraint('investigation_id', 'attempt_number', name='uq_investigation_attempts_number'),
            sa.CheckConstraint(_enum_check('outcome', ATTEMPT_OUTCOMES), name='attempt_outcome'),
            sa.CheckConstraint('attempt_number >= 1', name='investigation_attempt_number_positive'),
        )

    if 'investigation_attempt_requested_tools' not in existing_tables:
        op.create_table(
            'investigation_attempt_requested_tools',
            _uuid_pk(),
            _uuid_fk('attempt_id', 'investigation_attempts.id', ondelete='CASCADE'),
            sa.Column('request_order', sa.Integer, nullable=False),
            sa.Column('tool_type', sa.Text, nullable=False),
            sa.Column('raw_definition', postgresql.JSONB, nullable=False),
            sa.UniqueConstraint('attempt_id', 'request_order', name='uq_attempt_requested_tools_order'),
        )

    if 'investigation_attempt_tool_calls' not in existing_tables:
        op.create_table(
            'investigation_attempt_tool_calls',
            _uuid_pk(),
            _uuid_fk('attempt_id', 'investigation_attempts.id', ondelete='CASCADE'),
            sa.Column('output_index', sa.Integer, nullable=False),
            sa.Column('provider_tool_call_id', sa.Text),
            sa.Column('tool_type', sa.Text, nullable=False),
            sa.Column('status', sa.Text),
            sa.Column('raw_payload', postgresql.JSONB, nullable=False),
            sa.UniqueConstraint('attempt_id', 'output_index', name='uq_attempt_tool_calls_index'),
        )

    if 'investigation_attempt_usage' not in existing_tables:
        op.create_table(
            'investigation_attempt_usage',
            _uuid_pk(),
            _uuid_fk('attempt_id', 'investigation_attempts.id', ondelete='CASCADE', unique=True),
            sa.Column('input_tokens', sa.Integer, nullable=False),
            sa.Column('output_tokens', sa.Integer, nullable=False),
            sa.Column('total_tokens', sa.Integer, nullable=False),
            sa.Column('cached_input_tokens', sa.Integer),
            sa.Column('reasoning_output_tokens', sa.Integer),
        )

    if 'investigation_attempt_errors' not in existing_tables:
        op.create_table(
            'investigation_attempt_errors',
            _uuid_pk(),
            _uuid_fk('attempt_id', 'investigation_attempts.id', ondelete='CASCADE', unique=True),
            sa.Column('error_name', sa.Text, nullable=False),
            sa.Column('error_message', sa.Text),
            sa.Column('status_code', sa.Integer),
        )

    if 'claims' not in existing_tables:
        op.create_table(
            'claims',
            _uuid_pk(),
            _uuid_fk('investigation_id', 'investigations.id', ondelete='CASCADE'),
            sa.Column('claim_order', sa.Integer, nullable=False),
            sa.Column('text', sa.Text, nullable=False),
            sa.Column('context', sa.Text, nullable=False),
            sa.Column('summary', sa.Text, nullable=False),
            sa.Column('reasoning', sa.Text, nullable=False),
            sa.Column('confidence', sa.Float, nullable=False),
            _timestamp('created_at', nullable=False),
            sa.CheckConstraint('confidence >= 0 AND confidence <= 1', name='claim_confidence_range'),
        )

    if 'claim_sources' not in existing_tables:
        op.create_table(
            'claim_sources',
            _uuid_pk(),
            _uuid_fk('claim_id', 'claims.id', ondelete='CASCADE'),
            sa.Column('source_order', sa.Integer, nullable=False),
            sa.Column('url', sa.Text, nullable=False),
            sa.Column('title', sa.Text, nullable=False),
            sa.Column('snippet', sa.Text, nullable=False),
            sa.Column('snapshot_hash', sa.String(64), nullable=False),
        )

    if 'image_blobs' not in existing_tables:
        op.create_table(
            'image_blobs',
            _uuid_pk(),
            sa.Column('content_hash', sa.String(64), nullable=False, unique=True),
            sa.Column('original_url', sa.Text, nullable=False),
            sa.Column('mime_type', sa.Text, nullable=False),
            sa.Column('size_bytes', sa.BigInteger, nullable=False),
            sa.Column('data', sa.LargeBinary, nullable=False),
            _timestamp('created_at', nullable=False),
        )

    if 'investigation_images' not in existing_tables:
        op.create_table(
            'investigation_images',
            _uuid_pk(),
            _uuid_fk('investigation_id', 'investigations.id', ondelete='CASCADE'),
            _uuid_fk('image_blob_id', 'image_blobs.id'),
            sa.Column('image_order', sa.Integer, nullable=False),
            sa.UniqueConstraint('investigation_id', 'image_order', name='uq_investigation_images_order'),
        )

    if 'investigation_jobs' not in existing_tables:
        op.create_table(
            'investigation_jobs',
            _uuid_pk(),
            sa.Column('task', sa.Text, nullable=False),
            sa.Column('job_key', sa.Text, nullable=False, unique=True),
            sa.Column('payload', postgresql.JSONB, nullable=False),
            sa.Column('status', sa.String(32), nullable=False, server_default='pending'),
            sa.Column('attempts', sa.Integer, nullable=False, server_default='0'),
            sa.Column('max_attempts', sa.Integer, nullable=False),
            _timestamp('run_at', nullable=False),
            sa.Column('locked_by', sa.Text),
            _timestamp('locked_at'),
            sa.Column('last_error', sa.Text),
            sa.Column('rerun_requested', sa.Boolean, nullable=False, server_default=sa.false()),
            _timestamp('created_at', nullable=False),
            _timestamp('updated_at', nullable=False),
            sa.CheckConstraint(_enum_check('status', JOB_STATUSES), name='job_status'),
        )

    # Re-inspect after potential table creation to apply missing indexes.
    inspector = sa.inspect(bind)
    wanted_indexes = (
        ('idx_post_versions_post_blob', 'post_versions', ['post_id', 'content_blob_id']),
        ('idx_investigations_status', 'investigations', ['status']),
        ('idx_investigation_runs_lease_expires', 'investigation_runs', ['lease_expires_at']),
        ('idx_claims_investigation', 'claims', ['investigation_id']),
        ('idx_claim_sources_claim', 'claim_sources', ['claim_id']),
        ('idx_investigation_jobs_status_run_at', 'investigation_jobs', ['status', 'run_at']),
    )
    for index_name, table_name, columns in wanted_indexes:
        existing_indexes = {idx['name'] for idx in inspector.get_indexes(table_name)}
        if index_name not in existing_indexes:
            op.create_index(index_name, table_name, columns)


def downgrade():
    op.drop_table('investigation_jobs')
    op.drop_table('investigation_images')
    op.drop_table('image_blobs')
    op.drop_table('claim_sources')
    op.drop_table('claims')
    op.drop_table('investigation_attempt_errors')
    op.drop_table('investigation_attempt_usage')
    op.drop_table('investigation_attempt_tool_calls')
    op.drop_table('investigation_attempt_requested_tools')
    op.drop_table('investigation_attempts')
    op.drop_table('investigation_runs')
    op.drop_table('investigations')
    op.drop_table('prompts')
    op.drop_table('post_versions')
    op.drop_table('image_occurrences')
    op.drop_table('image_occurrence_sets')
    op.drop_table('content_blobs')
    op.drop_table('posts')
