"""
CLI Progress Monitor Tests

Run with:
    python -m pytest tests/test_progress_monitor.py -v
"""

from cli.progress_monitor import ProgressMonitor, format_message, format_progress, progress_bar


class TestFormatting:
    """Console rendering helpers."""

    def test_progress_bar_clamps(self):
        assert "100.0%" in progress_bar(150)
        assert "  0.0%" in progress_bar(-5)

    def test_format_progress_includes_step_and_error(self):
        line = format_progress({
            "status": "error",
            "progress": 0,
            "current_step": "Generation failed",
            "error": "model unavailable",
        })
        assert "ERROR" in line
        assert "Generation failed" in line
        assert "model unavailable" in line

    def test_format_file_message(self):
        line = format_message({"type": "file", "data": {"name": "index.html", "language": "html"}})
        assert "index.html" in line
        assert "(html)" in line

    def test_format_complete_lists_files(self):
        text = format_message({
            "type": "complete",
            "data": {
                "message": "Generation completed successfully!",
                "files": [{"name": "package.json", "path": "/package.json"}],
            },
        })
        assert "Generation completed successfully!" in text
        assert "/package.json" in text


class TestProgressMonitor:
    """Event handling without a live server."""

    def test_stream_url(self):
        monitor = ProgressMonitor("s1", server_url="http://localhost:8765/")
        assert monitor.stream_url == "http://localhost:8765/stream/s1"

    def test_terminal_message_stops_monitor(self, capsys):
        monitor = ProgressMonitor("s1")
        monitor._running = True

        monitor.handle_event("progress", {"status": "analyzing", "progress": 10, "current_step": "Analyzing"})
        monitor.handle_event("progress", {"status": "analyzing", "progress": 10, "current_step": "Analyzing"})
        assert monitor._running is True

        monitor.handle_event("message", {"type": "complete", "data": {"files": []}})
        assert monitor._running is False

        out = capsys.readouterr().out
        assert out.count("ANALYZING") == 1
