"""
Tests for queue message parsing and publishing.
"""

import json

import pytest

from stats_sync.lib.work_queue import BadMessageError, WorkQueue, parse_message_body

KNOWN = ("RI", "TX", "USA")


class TestParseMessageBody:
    @pytest.mark.parametrize("body", [
        '{"partition": "TX"}',
        b'{"partition": "TX"}',
        {"partition": "TX"},
        '{"state": "tx"}',
    ])
    def test_well_formed(self, body):
        assert parse_message_body(body)["partition"] == "TX"

    def test_extra_fields_are_kept(self):
        message = parse_message_body('{"partition": "TX", "mode": "sequential"}')
        assert message == {"partition": "TX", "mode": "sequential"}

    @pytest.mark.parametrize("body", [
        "{state:RI}",
        "{partition: RI}",
        "{'state': 'RI'}",
        'state: "RI"',
        "rebuild RI please",
    ])
    def test_malformed_bodies_are_recovered(self, body):
        assert parse_message_body(body, known_partitions=KNOWN)["partition"] == "RI"

    def test_last_resort_match_must_be_known(self):
        with pytest.raises(BadMessageError):
            parse_message_body("PLEASE DO IT", known_partitions=KNOWN)

    @pytest.mark.parametrize("body", ["", "[1, 2]", '{"mode": "fanout"}'])
    def test_unusable_bodies(self, body):
        with pytest.raises(BadMessageError):
            parse_message_body(body, known_partitions=KNOWN)


class TestWorkQueue:
    def test_requires_url(self):
        with pytest.raises(ValueError):
            WorkQueue("")

    def test_fan_out_with_delayed_sentinel(self, sqs_client, sync_queue_url):
        queue = WorkQueue(sync_queue_url, sqs_client=sqs_client)
        partitions = [f"P{i:02d}" for i in range(12)]

        sent = queue.fan_out(partitions, sentinel="USA", mode="fanout")

        assert sent == 13
        bodies = []
        for _ in range(5):
            response = sqs_client.receive_message(QueueUrl=sync_queue_url, MaxNumberOfMessages=10)
            bodies.extend(json.loads(m["Body"]) for m in response.get("Messages", []))
        assert sorted(b["partition"] for b in bodies if b["partition"] != "USA") == sorted(partitions)
        assert all(b["mode"] == "fanout" for b in bodies)

    def test_publish(self, sqs_client, rebuild_queue_url):
        queue = WorkQueue(rebuild_queue_url, sqs_client=sqs_client)

        queue.publish({"partition": "TX", "mode": "sequential"})

        message = sqs_client.receive_message(QueueUrl=rebuild_queue_url)["Messages"][0]
        assert json.loads(message["Body"]) == {"partition": "TX", "mode": "sequential"}
