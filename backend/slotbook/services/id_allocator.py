import sqlite3

SERVICE_SEQUENCE = "service"
BOOKING_SEQUENCE = "booking"


class IdAllocator:
    """Named, strictly increasing id sequences starting at 1.

    Allocation happens on the caller's connection, so an id is only consumed
    when the surrounding transaction commits.
    """

    def allocate(self, conn: sqlite3.Connection, sequence: str) -> int:
        conn.execute(
            "INSERT OR IGNORE INTO id_sequences (name, last_value) VALUES (?, 0)",
            (sequence,),
        )
        conn.execute(
            "UPDATE id_sequences SET last_value = last_value + 1 WHERE name = ?",
            (sequence,),
        )
        row = conn.execute("SELECT last_value FROM id_sequences WHERE name = ?", (sequence,)).fetchone()
        return int(row["last_value"])

    def peek(self, conn: sqlite3.Connection, sequence: str) -> int:
        row = conn.execute("SELECT last_value FROM id_sequences WHERE name = ?", (sequence,)).fetchone()
        return int(row["last_value"]) if row else 0
