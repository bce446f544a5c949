#db_session.py
from uuid import UUID
from psycopg2.extensions import cursor as Cursor


def set_db_actor(cur: Cursor, user_id: UUID | str | None) -> None:
    """
    Expose the acting user to row-level policies for the rest of the transaction.
    The hosted platform's policies read `request.jwt.claim.sub`.
    """
    if user_id is None:
        return
    cur.execute("SELECT set_config('request.jwt.claim.sub', %s, true);", (str(user_id),))
