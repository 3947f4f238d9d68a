import io
import json
import logging
import unittest


class TestJsonlLogging(unittest.TestCase):
    def test_records_carry_correlation_keys(self) -> None:
        from matrix_port.util.obslog import JsonlFormatter

        stream = io.StringIO()
        handler = logging.StreamHandler(stream)
        handler.setFormatter(JsonlFormatter(component="matrix-port"))
        logger = logging.getLogger("matrix_port.test_obslog")
        logger.propagate = False
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)
        try:
            logger.info("created room %s", "general", extra={"room_id": "!r:x", "channel_id": "general"})
            try:
                raise RuntimeError("boom")
            except RuntimeError:
                logger.exception("provisioning failed", extra={"user_id": "u1"})
        finally:
            logger.removeHandler(handler)

        first, second = [json.loads(line) for line in stream.getvalue().splitlines()]
        self.assertEqual(first["msg"], "created room general")
        self.assertEqual(first["component"], "matrix-port")
        self.assertEqual(first["room_id"], "!r:x")
        self.assertEqual(first["channel_id"], "general")
        self.assertNotIn("exc", first)
        self.assertEqual(second["level"], "ERROR")
        self.assertEqual(second["user_id"], "u1")
        self.assertIn("RuntimeError: boom", second["exc"])


if __name__ == "__main__":
    unittest.main()
