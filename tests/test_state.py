import json

from comanda.receipts.state import KEY_ENABLED, KEY_PRINTER, KEY_PROCESSED, StateStore


def test_values_survive_reload(tmp_path):
    path = tmp_path / "state.json"
    st = StateStore(path)
    st.update({KEY_ENABLED: True, KEY_PROCESSED: [3, 5]})

    again = StateStore(path)
    assert again.get(KEY_ENABLED) is True
    assert again.get(KEY_PROCESSED) == [3, 5]
    assert not path.with_suffix(".json.tmp").exists()


def test_corrupt_file_gives_empty_state(tmp_path):
    path = tmp_path / "state.json"
    path.write_text("{non è json", encoding="utf-8")
    st = StateStore(path)
    assert st.get(KEY_ENABLED, False) is False
    st.set(KEY_ENABLED, True)
    assert json.loads(path.read_text(encoding="utf-8")) == {KEY_ENABLED: True}


def test_clear_only_touches_namespace(tmp_path):
    st = StateStore(tmp_path / "state.json")
    st.update({KEY_ENABLED: True, KEY_PRINTER: "0519:2013", "ui.theme": "dark"})
    st.clear()
    assert json.loads((tmp_path / "state.json").read_text(encoding="utf-8")) == {"ui.theme": "dark"}


def test_keys_are_independently_clearable(tmp_path):
    st = StateStore(tmp_path / "state.json")
    st.update({KEY_ENABLED: True, KEY_PROCESSED: [1]})
    st.delete(KEY_PROCESSED)
    assert json.loads((tmp_path / "state.json").read_text(encoding="utf-8")) == {KEY_ENABLED: True}
