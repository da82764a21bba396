"""
tests/core/aws/test_aws_client.py - get_client 테스트
"""

from unittest.mock import MagicMock, patch

from botocore.config import Config

from core.aws import get_client


class TestGetClient:
    """boto3 client 생성 테스트"""

    def test_config_applied(self):
        """adaptive 재시도 + 타임아웃 설정"""
        session = MagicMock()

        get_client(session, "elasticache", region_name="ap-northeast-2")

        args, kwargs = session.client.call_args
        assert args[0] == "elasticache"
        assert kwargs["region_name"] == "ap-northeast-2"
        config = kwargs["config"]
        assert config.retries == {"max_attempts": 3, "mode": "adaptive"}
        assert config.connect_timeout == 10
        assert config.read_timeout == 30

    def test_existing_config_merged(self):
        session = MagicMock()

        get_client(session, "s3", config=Config(signature_version="s3v4"))

        config = session.client.call_args.kwargs["config"]
        assert config.signature_version == "s3v4"
        assert config.retries["mode"] == "adaptive"

    def test_default_session_when_none(self):
        """세션이 없으면 기본 boto3.Session 사용"""
        with patch("boto3.Session") as mock_session_class:
            get_client(None, "sns", region_name="us-east-1")

        mock_session_class.assert_called_once_with()
        mock_session_class.return_value.client.assert_called_once()
