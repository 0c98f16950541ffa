import threading
import time

from madridista_hub.app.services.debounce import DebouncedValue


def test_zero_delay_emits_synchronously():
    emitted = []
    value = DebouncedValue("", delay_ms=0, on_emit=emitted.append)
    value.set("modric")
    assert emitted == ["modric"]
    assert value.debounced == "modric"
    assert not value.pending


def test_negative_delay_is_clamped_to_zero():
    emitted = []
    value = DebouncedValue("", delay_ms=-250, on_emit=emitted.append)
    assert value.delay_ms == 0
    value.set("kroos")
    assert emitted == ["kroos"]


def test_burst_emits_only_final_value():
    emitted = []
    done = threading.Event()

    def on_emit(text):
        emitted.append(text)
        done.set()

    value = DebouncedValue("", delay_ms=50, on_emit=on_emit)
    for text in ("r", "re", "rea", "real", "real m", "real madrid"):
        value.set(text)
    assert value.value == "real madrid"
    assert value.debounced == ""

    assert done.wait(2)
    time.sleep(0.15)
    assert emitted == ["real madrid"]
    assert value.debounced == "real madrid"


def test_cancel_drops_pending_emission():
    emitted = []
    value = DebouncedValue("inicio", delay_ms=30, on_emit=emitted.append)
    value.set("ancelotti")
    assert value.pending
    value.cancel()
    time.sleep(0.1)
    assert emitted == []
    assert value.debounced == "inicio"


def test_flush_emits_pending_value_once():
    emitted = []
    value = DebouncedValue("", delay_ms=200, on_emit=emitted.append)
    value.set("bernabeu")
    value.flush()
    assert emitted == ["bernabeu"]
    time.sleep(0.3)
    assert emitted == ["bernabeu"]

    value.flush()
    assert emitted == ["bernabeu"]
