"""Unit tests for __init__.py module."""

from unittest.mock import patch
from mcp_server_fileshare import main, __version__, SERVER_NAME


class TestInit:
    """Test __init__.py functionality."""

    def test_main_function_calls_server_main(self):
        """Test that main() calls server.main()."""
        with patch("mcp_server_fileshare.server.main") as mock_server_main:
            main()
            mock_server_main.assert_called_once()

    def test_version_attribute_exists(self):
        """Test that __version__ attribute is accessible."""
        assert hasattr(__import__("mcp_server_fileshare"), "__version__")
        assert isinstance(__version__, str)

    def test_server_name_matches_server_title(self):
        """The exported name and the FastMCP server title agree."""
        from mcp_server_fileshare.server import SERVER_TITLE

        assert SERVER_NAME == "File Share Relay 📦"
        assert SERVER_NAME == SERVER_TITLE

    def test_all_exports(self):
        """Test that __all__ contains expected exports."""
        import mcp_server_fileshare

        expected_exports = ["main", "server", "__version__", "SERVER_NAME"]
        assert hasattr(mcp_server_fileshare, "__all__")
        assert set(mcp_server_fileshare.__all__) == set(expected_exports)
