from session import (
    CLASS_AVERAGE_AVAILABLE_TOOLTIP,
    CLASS_AVERAGE_UNAVAILABLE_TOOLTIP,
    ClassCountGate,
    DatasetSession,
    find_class_field,
)


def test_gate_enables_class_average_with_two_classes() -> None:
    gate = ClassCountGate()
    assert gate.load([{"Klasse": "5a"}, {"Klasse": "5a"}, {"Klasse": "5b"}]) == 2

    availability = gate.availability()
    assert availability.is_available
    assert availability.class_count == 2
    assert availability.tooltip == CLASS_AVERAGE_AVAILABLE_TOOLTIP


def test_gate_disabled_for_single_class() -> None:
    gate = ClassCountGate()
    gate.load([{"Klasse": "5a"}, {"Klasse": "5a"}])

    availability = gate.availability()
    assert not availability.is_available
    assert availability.tooltip == CLASS_AVERAGE_UNAVAILABLE_TOOLTIP


def test_gate_accepts_class_column_aliases() -> None:
    assert find_class_field({"Name": "x", " Gruppe ": "A"}) == " Gruppe "
    assert find_class_field({"CLASS": "A"}) == "CLASS"
    assert find_class_field({"Name": "x"}) is None

    gate = ClassCountGate()
    gate.load([{"class": "A"}, {"Gruppe": "B"}, {"Name": "ohne Klasse"}, {"Klasse": ""}])
    assert gate.class_count == 2


def test_gate_reset_and_empty_upload() -> None:
    gate = ClassCountGate()
    gate.load([{"Klasse": "5a"}, {"Klasse": "5b"}])
    gate.reset()
    assert gate.class_count == 0
    assert gate.load(None) == 0


def test_dataset_session_store_round_trip_keeps_class_count() -> None:
    session = DatasetSession()
    session.load([{"Klasse": "5a", "Langname": "Muster"}, {"Klasse": "6b", "Langname": "Beispiel"}], "export.csv")

    restored = DatasetSession.from_store(session.to_store())
    assert restored.loaded
    assert restored.source_name == "export.csv"
    assert restored.rows == session.rows
    assert restored.gate.class_count == 2


def test_dataset_session_reset_and_empty_store() -> None:
    session = DatasetSession()
    session.load([{"Klasse": "5a"}], None)
    assert session.source_name == "Upload"

    session.reset()
    assert not session.loaded
    assert session.rows == []
    assert session.gate.class_count == 0
    assert not DatasetSession.from_store(None).loaded


def test_gate_serializes_for_store() -> None:
    gate = ClassCountGate()
    gate.load([{"Klasse": "5a"}, {"Klasse": "5b"}, {"Klasse": "6a"}])
    assert gate.to_dict() == {"class_count": 3}
    assert ClassCountGate.from_dict(gate.to_dict()).availability().class_count == 3
    assert ClassCountGate.from_dict(None).class_count == 0
