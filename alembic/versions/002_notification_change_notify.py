"""Publish notification row changes with pg_notify

Revision ID: 002
Revises: 001
Create Date: 2026-10-18 00:00:00.000000+00:00

What:  AFTER INSERT/UPDATE/DELETE trigger on `notifications` that sends
       {"table", "type", "record", "old_record"} on the change feed channel.
Why:   PostgresChangeFeed LISTENs on this channel; NOTIFY is delivered only
       when the writing transaction commits.

Payload shape:
    INSERT / UPDATE → record is the new row, old_record is null
    DELETE          → record is null, old_record is {"id", "user_id"}

NOTIFY payloads are limited to 8000 bytes. While the encoded payload is over
MAX_PAYLOAD_BYTES the row's message is halved; every other column is bounded
well below the limit, so the loop always ends with a payload that fits.
"""

from typing import Sequence, Union
from alembic import op

from shutterbook.config import settings

# revision identifiers
revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

MAX_PAYLOAD_BYTES = 7900


def upgrade() -> None:
    channel = settings.change_feed_channel
    op.execute(
        f"""
        CREATE OR REPLACE FUNCTION fn_notifications_notify_change()
        RETURNS trigger AS $$
        DECLARE
            _record jsonb;
            _old_record jsonb;
            _message text;
            _payload text;
        BEGIN
            IF TG_OP = 'DELETE' THEN
                _old_record := jsonb_build_object('id', OLD.id, 'user_id', OLD.user_id);
            ELSE
                _record := to_jsonb(NEW);
                _message := coalesce(NEW.message, '');
            END IF;

            _payload := json_build_object(
                'table', TG_TABLE_NAME,
                'type', TG_OP,
                'record', _record,
                'old_record', _old_record
            )::text;

            WHILE octet_length(_payload) > {MAX_PAYLOAD_BYTES} AND length(_message) > 0 LOOP
                _message := left(_message, length(_message) / 2);
                _record := jsonb_set(_record, '{{message}}', to_jsonb(_message));
                _payload := json_build_object(
                    'table', TG_TABLE_NAME,
                    'type', TG_OP,
                    'record', _record,
                    'old_record', _old_record
                )::text;
            END LOOP;

            PERFORM pg_notify('{channel}', _payload);
            RETURN NULL;
        END;
        $$ LANGUAGE plpgsql;

        DROP TRIGGER IF EXISTS trg_notifications_notify_change ON notifications;
        CREATE TRIGGER trg_notifications_notify_change
        AFTER INSERT OR UPDATE OR DELETE ON notifications
        FOR EACH ROW
        EXECUTE FUNCTION fn_notifications_notify_change();
        """
    )


def downgrade() -> None:
    op.execute(
        """
        DROP TRIGGER IF EXISTS trg_notifications_notify_change ON notifications;
        DROP FUNCTION IF EXISTS fn_notifications_notify_change();
        """
    )
