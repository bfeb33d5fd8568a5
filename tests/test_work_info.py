import sqlite3

from powjobs.chain.work_info import SqliteWorkInfoLookup


def _database(path):
    conn = sqlite3.connect(path)
    conn.execute(
        "CREATE TABLE work (object_id TEXT, category TEXT, block_start INTEGER, "
        "difficulty_target INTEGER, target_id TEXT)"
    )
    conn.executemany(
        "INSERT INTO work VALUES (?, ?, ?, ?, ?)",
        [
            ("5-42", "BUILD", 900, 120, None),
            ("5-42", "BUILD", 1000, 150, None),
            ("9-1", "RAID", 2000, 80, "2-5"),
        ],
    )
    conn.commit()
    conn.close()


def test_lookup_returns_latest_record(tmp_path):
    db = tmp_path / "work.db"
    _database(db)
    info = SqliteWorkInfoLookup(db).lookup("5-42", "struct_build_complete")
    assert (info.block_start, info.difficulty_range, info.target_id, info.error) == (1000, 150, None, None)


def test_lookup_returns_raid_target(tmp_path):
    db = tmp_path / "work.db"
    _database(db)
    info = SqliteWorkInfoLookup(db).lookup("9-1", "planet_raid_complete")
    assert info.target_id == "2-5"
    assert info.difficulty_range == 80


def test_lookup_reports_missing_records(tmp_path):
    db = tmp_path / "work.db"
    _database(db)
    lookup = SqliteWorkInfoLookup(db)
    assert "No work record" in lookup.lookup("5-42", "ore_miner_complete").error
    assert "Unknown action type" in lookup.lookup("5-42", "teleport").error
    assert "not found" in SqliteWorkInfoLookup(tmp_path / "missing.db").lookup("5-42", "struct_build_complete").error
