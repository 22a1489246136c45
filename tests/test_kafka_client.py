from unittest import mock

import pytest
from kafka.errors import KafkaTimeoutError

from dataset_service.kafka_client import ImportQueue


def make_producer(*results):
    producer = mock.MagicMock()
    producer.send.return_value.get.side_effect = list(results)
    return producer


def test_enqueue_import_sends_upload_id_keyed_message():
    producer = make_producer(None)
    queue = ImportQueue(producer, topic="imports", attempts=3, timeout=2)

    queue.enqueue_import("upload-1")

    producer.send.assert_called_once_with(
        "imports", key="upload-1", value={"file_upload_id": "upload-1"}
    )
    producer.send.return_value.get.assert_called_once_with(timeout=2)


def test_enqueue_import_retries_until_acknowledged():
    producer = make_producer(KafkaTimeoutError(), None)
    queue = ImportQueue(producer, topic="imports", attempts=3, timeout=2)

    queue.enqueue_import("upload-1")

    assert producer.send.call_count == 2


def test_enqueue_import_raises_after_last_attempt():
    producer = make_producer(KafkaTimeoutError(), KafkaTimeoutError(), KafkaTimeoutError())
    queue = ImportQueue(producer, topic="imports", attempts=3, timeout=2)

    with pytest.raises(KafkaTimeoutError):
        queue.enqueue_import("upload-1")

    assert producer.send.call_count == 3


def test_close_closes_producer():
    producer = make_producer()
    ImportQueue(producer, topic="imports").close()
    producer.close.assert_called_once_with()


def test_enqueue_import_retries_when_send_itself_fails():
    producer = mock.MagicMock()
    producer.send.side_effect = [KafkaTimeoutError("metadata"), mock.MagicMock()]
    queue = ImportQueue(producer, topic="imports", attempts=3, timeout=2)

    queue.enqueue_import("upload-1")

    assert producer.send.call_count == 2


def test_enqueue_import_gives_up_when_send_keeps_failing():
    producer = mock.MagicMock()
    producer.send.side_effect = KafkaTimeoutError("metadata")
    queue = ImportQueue(producer, topic="imports", attempts=2, timeout=2)

    with pytest.raises(KafkaTimeoutError):
        queue.enqueue_import("upload-1")

    assert producer.send.call_count == 2
