"""Test that all public exports are importable."""


def test_import_main():
    import playlog
    assert hasattr(playlog, "run_logger")
    assert hasattr(playlog, "__version__")


def test_import_errors():
    from playlog import PlaylogError, SheetsWriteError, SpotifyAuthError, StateSaveError
    assert issubclass(SheetsWriteError, PlaylogError)
    assert issubclass(SpotifyAuthError, PlaylogError)
    assert issubclass(StateSaveError, PlaylogError)


def test_import_triggers():
    from playlog.cli import main
    from playlog.server import create_app
    assert main is not None
    assert create_app is not None
