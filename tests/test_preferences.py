from src.assistant_sync.infrastructure.preferences import ActiveConversationStore


def test_active_conversation_persists_per_user(tmp_path):
    path = tmp_path / "prefs.json"
    store = ActiveConversationStore(str(path))
    store.set("user-1", "conv-1")
    store.set("user-2", "conv-9")

    reloaded = ActiveConversationStore(str(path))
    assert reloaded.get("user-1") == "conv-1"
    assert reloaded.get("user-2") == "conv-9"
    assert reloaded.get("user-3") is None


def test_clear_only_matching_conversation(tmp_path):
    store = ActiveConversationStore(str(tmp_path / "prefs.json"))
    store.set("user-1", "conv-1")

    assert store.clear("user-1", "conv-other") is False
    assert store.get("user-1") == "conv-1"
    assert store.clear("user-1", "conv-1") is True
    assert store.clear("user-1") is False
    assert ActiveConversationStore(str(tmp_path / "prefs.json")).get("user-1") is None


def test_memory_only_store_and_corrupt_file(tmp_path):
    memory = ActiveConversationStore()
    memory.set("u", "c")
    assert memory.get("u") == "c"

    path = tmp_path / "prefs.json"
    path.write_text("not json", encoding="utf-8")
    assert ActiveConversationStore(str(path)).get("u") is None
