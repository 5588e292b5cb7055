"""Tests for certkeeper.adapters.ftp_adapter.FtpAdapter."""

from __future__ import annotations

import ftplib
from unittest.mock import MagicMock, patch

import pytest

from certkeeper.adapters.ftp_adapter import FtpAdapter, FtpTarget
from certkeeper.app.errors import CertProblem, ErrorKind

TARGET = FtpTarget(host="ftp.example.com", username="deploy", password="pw")


@pytest.fixture()
def ftp():
    session = MagicMock()
    session.pwd.return_value = "/"
    with patch("certkeeper.adapters.ftp_adapter.ftplib.FTP", return_value=session):
        yield session


class TestUpload:
    def test_existing_directories_are_reused(self, ftp):
        ftp.mkd.side_effect = ftplib.error_perm("550 Directory already exists")
        FtpAdapter().upload(TARGET, b"data", "/certs/web/web.crt")
        assert [c.args[0] for c in ftp.mkd.call_args_list] == ["/certs", "/certs/web"]
        ftp.cwd.assert_any_call("/certs/web")
        ftp.cwd.assert_called_with("/")
        assert ftp.storbinary.call_args.args[0] == "STOR /certs/web/web.crt"

    def test_denied_directory_is_reported(self, ftp):
        ftp.mkd.side_effect = ftplib.error_perm("550 Permission denied")
        ftp.cwd.side_effect = ftplib.error_perm("550 No such directory")
        with pytest.raises(CertProblem) as exc_info:
            FtpAdapter().upload(TARGET, b"data", "/certs/web.crt")
        assert exc_info.value.kind == ErrorKind.ADAPTER_REMOTE
        assert "Permission denied" in exc_info.value.detail
        ftp.storbinary.assert_not_called()
        ftp.quit.assert_called_once()

    def test_login_refused(self, ftp):
        ftp.login.side_effect = ftplib.error_perm("530 Login incorrect")
        with pytest.raises(CertProblem) as exc_info:
            FtpAdapter().upload(TARGET, b"data", "web.crt")
        assert exc_info.value.kind == ErrorKind.ADAPTER_AUTH
        ftp.close.assert_called_once()
