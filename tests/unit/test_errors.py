"""
エラー定義のユニットテスト
"""

import logging
import unittest

from authbridge.errors import (
    AuthClientException,
    ClientError,
    ClientErrorType,
    ConfigurationException,
    create_client_error,
)


class TestClientErrorType(unittest.TestCase):
    """ClientErrorType列挙型のテスト"""

    def test_values(self):
        self.assertEqual(
            [member.value for member in ClientErrorType],
            [
                "INIT_ERROR",
                "AUTH_ERROR",
                "AUTH_REFRESH_ERROR",
                "LOAD_ERROR",
                "UNEXPECTED_AUTH_CHANGE",
                "USER_DATA_ERROR",
            ],
        )

    def test_str_is_value(self):
        self.assertEqual(f"{ClientErrorType.AUTH_ERROR}", "AUTH_ERROR")


class TestCreateClientError(unittest.TestCase):
    """create_client_error関数のテスト"""

    def test_from_message(self):
        error = create_client_error(ClientErrorType.AUTH_ERROR, "denied")
        self.assertEqual(error, ClientError(type=ClientErrorType.AUTH_ERROR, message="denied"))

    def test_from_exception(self):
        error = create_client_error(ClientErrorType.INIT_ERROR, RuntimeError("failed"))
        self.assertEqual(error.message, "failed")

    def test_from_exception_without_message(self):
        error = create_client_error(ClientErrorType.INIT_ERROR, TimeoutError())
        self.assertEqual(error.message, "TimeoutError")

    def test_without_reason(self):
        self.assertEqual(create_client_error(ClientErrorType.LOAD_ERROR).message, "")


class TestAuthClientException(unittest.TestCase):
    def test_wraps_client_error(self):
        error = ClientError(type=ClientErrorType.AUTH_REFRESH_ERROR, message="expired")
        exc = AuthClientException(error)

        self.assertIs(exc.error, error)
        self.assertEqual(exc.log_level, logging.WARNING)
        self.assertEqual(str(exc), "[AUTH_REFRESH_ERROR] expired")

    def test_configuration_exception_is_auth_client_exception(self):
        exc = ConfigurationException(ClientError(type=ClientErrorType.INIT_ERROR))
        self.assertIsInstance(exc, AuthClientException)
        self.assertEqual(exc.log_level, logging.ERROR)


if __name__ == "__main__":
    unittest.main()
