import asyncio
import json

from campus_sync.store import JsonFileStore


def test_values_survive_a_new_store_instance(tmp_path) -> None:
    path = tmp_path / "store.json"

    async def write():
        store = JsonFileStore(path)
        await store.set("a", {"x": 1})
        await store.set("b", [1, 2])
        await store.delete_many(["b", "missing"])

    async def read():
        store = JsonFileStore(path)
        return await store.get("a"), await store.get("b", "default")

    asyncio.run(write())
    assert json.loads(path.read_text(encoding="utf-8")) == {"a": {"x": 1}}
    assert asyncio.run(read()) == ({"x": 1}, "default")


def test_corrupt_file_starts_empty(tmp_path) -> None:
    path = tmp_path / "store.json"
    path.write_text("{not json", encoding="utf-8")

    async def scenario():
        store = JsonFileStore(path)
        before = await store.keys()
        await store.set("k", "v")
        return before, await store.get("k")

    assert asyncio.run(scenario()) == ([], "v")


def test_update_is_read_modify_write(tmp_path) -> None:
    store = JsonFileStore(tmp_path / "store.json")

    def claim(current):
        if current == "taken":
            return current, False
        return "taken", True

    async def scenario():
        results = await asyncio.gather(*(store.update("slot", claim) for _ in range(5)))
        return results, await store.get("slot")

    results, value = asyncio.run(scenario())
    assert sorted(results) == [False, False, False, False, True]
    assert value == "taken"


def test_update_returning_none_deletes(tmp_path) -> None:
    store = JsonFileStore(tmp_path / "store.json")

    async def scenario():
        await store.set("k", 1)
        await store.update("k", lambda current: (None, current))
        return await store.keys()

    assert asyncio.run(scenario()) == []


def test_failed_write_leaves_previous_state(tmp_path, monkeypatch) -> None:
    path = tmp_path / "store.json"
    store = JsonFileStore(path)

    def disk_full(data):
        raise OSError("No space left on device")

    async def scenario():
        await store.set("refresh:midnight", {"claimed_date": None})
        monkeypatch.setattr(store, "_flush", disk_full)
        errors = 0
        for op in (
            store.set("notify:low_attendance:2026-03-10", True),
            store.delete_many(["refresh:midnight"]),
            store.update("refresh:midnight", lambda cur: ({"claimed_date": "2026-03-10"}, True)),
        ):
            try:
                await op
            except OSError:
                errors += 1
        return (
            errors,
            await store.get("notify:low_attendance:2026-03-10"),
            await store.get("refresh:midnight"),
            await store.keys(),
        )

    errors, marker, claim, keys = asyncio.run(scenario())
    assert errors == 3
    assert marker is None
    assert claim == {"claimed_date": None}
    assert keys == ["refresh:midnight"]
    assert json.loads(path.read_text(encoding="utf-8")) == {"refresh:midnight": {"claimed_date": None}}
