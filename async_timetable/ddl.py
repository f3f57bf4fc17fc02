"""Database schema DDL for the timetable engine."""

SCHEMA_VERSION = "00001 Initial async_timetable schema"

TIMETABLE_SCHEMA_DDL = """
CREATE SCHEMA IF NOT EXISTS timetable;

CREATE TABLE timetable.migration (
  id       INT8 NOT NULL PRIMARY KEY,
  version  TEXT NOT NULL
);

CREATE DOMAIN timetable.cron AS TEXT CHECK(
    substr(VALUE, 1, 6) IN ('@every', '@after') AND (substr(VALUE, 7) :: INTERVAL) IS NOT NULL
    OR VALUE = '@reboot'
    OR VALUE ~ '^((\\d+|\\*)(-\\d+)?(/\\d+)?(,(\\d+|\\*)(-\\d+)?(/\\d+)?)*\\s+){4}(\\d+|\\*)(-\\d+)?(/\\d+)?(,(\\d+|\\*)(-\\d+)?(/\\d+)?)*\\s*$'
);

CREATE TABLE timetable.chain (
  chain_id             BIGSERIAL       PRIMARY KEY,
  chain_name           TEXT            NOT NULL UNIQUE,
  run_at               timetable.cron,
  max_instances        INTEGER,
  timeout              INTEGER         DEFAULT 0,
  live                 BOOLEAN         DEFAULT FALSE,
  self_destruct        BOOLEAN         DEFAULT FALSE,
  exclusive_execution  BOOLEAN         DEFAULT FALSE,
  client_name          TEXT
);

CREATE TYPE timetable.command_kind AS ENUM ('SQL', 'PROGRAM', 'BUILTIN');

CREATE TABLE timetable.task (
  task_id              BIGSERIAL               PRIMARY KEY,
  chain_id             BIGINT                  REFERENCES timetable.chain(chain_id)
                                               ON UPDATE CASCADE ON DELETE CASCADE,
  task_order           DOUBLE PRECISION        NOT NULL,
  task_name            TEXT,
  kind                 timetable.command_kind  NOT NULL DEFAULT 'SQL',
  command              TEXT                    NOT NULL,
  run_as               TEXT,
  database_connection  TEXT,
  ignore_error         BOOLEAN                 NOT NULL DEFAULT FALSE,
  autonomous           BOOLEAN                 NOT NULL DEFAULT FALSE,
  timeout              INTEGER                 DEFAULT 0
);

CREATE INDEX idx_task_chain_order
ON timetable.task (chain_id, task_order);

CREATE TABLE timetable.parameter (
  task_id   BIGINT   REFERENCES timetable.task(task_id)
                     ON UPDATE CASCADE ON DELETE CASCADE,
  order_id  INTEGER  CHECK (order_id > 0),
  value     JSONB,
  PRIMARY KEY (task_id, order_id)
);

CREATE UNLOGGED TABLE timetable.active_session (
  client_pid    BIGINT       NOT NULL,
  client_name   TEXT         NOT NULL,
  server_pid    BIGINT       NOT NULL,
  started_at    TIMESTAMPTZ  DEFAULT now(),
  heartbeat_at  TIMESTAMPTZ  DEFAULT now()
);

CREATE UNLOGGED TABLE timetable.active_chain (
  chain_id     BIGINT       NOT NULL,
  client_name  TEXT         NOT NULL,
  started_at   TIMESTAMPTZ  DEFAULT now()
);

CREATE TYPE timetable.log_type AS ENUM ('DEBUG', 'NOTICE', 'INFO', 'ERROR', 'PANIC', 'USER');

CREATE TABLE timetable.log (
  ts            TIMESTAMPTZ         DEFAULT now(),
  pid           INTEGER             NOT NULL,
  log_level     timetable.log_type  NOT NULL,
  client_name   TEXT,
  message       TEXT,
  message_data  JSONB
);

CREATE TABLE timetable.execution_log (
  chain_id     BIGINT,
  task_id      BIGINT,
  last_run     TIMESTAMPTZ             DEFAULT now(),
  finished     TIMESTAMPTZ,
  pid          BIGINT,
  returncode   INTEGER,
  kind         timetable.command_kind,
  command      TEXT,
  output       TEXT,
  client_name  TEXT                    NOT NULL
);
"""

MIGRATION_SEED_SQL = "INSERT INTO timetable.migration (id, version) VALUES ($1, $2)"


async def apply_schema(conn) -> None:
    """Create the timetable schema and record its version."""
    async with conn.transaction():
        await conn.execute(TIMETABLE_SCHEMA_DDL)
        await conn.execute(MIGRATION_SEED_SQL, 0, SCHEMA_VERSION)
