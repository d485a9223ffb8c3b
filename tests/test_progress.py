from r128_normalizer.progress import ConsoleProgress


def test_new_bar_per_pass():
    progress = ConsoleProgress("demo.wav", disable=True)
    progress("measure_input", 50, 100)
    assert progress._stage == "measure_input"
    progress("measure_input", 100, 100)
    # Finished passes are closed.
    assert progress._bar is None

    progress("limit", 40, 100)
    assert progress._stage == "limit"
    progress("limit", 10, 100)
    assert progress._last == 10
    progress.close()
    assert progress._bar is None
