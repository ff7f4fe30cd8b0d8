from unittest.mock import patch

import api
import main


class TestEntryPoint:
    """Test how the server is launched"""

    def test_app_built_by_uvicorn_factory(self):
        with patch("main.uvicorn.run") as run:
            main.main()

        args, kwargs = run.call_args
        assert args[0] == "api:create_app"
        assert kwargs["factory"] is True

    def test_importing_api_builds_no_app(self):
        assert not hasattr(api, "app")
