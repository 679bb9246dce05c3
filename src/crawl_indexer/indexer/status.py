"""
Worker status reporting for a supervising process.
"""
import logging
from datetime import datetime, timezone

import boto3

from crawl_indexer.common.config import AWS_REGION

logger = logging.getLogger("indexer.status")


class StatusReporter:
    """Receives the current status of a worker."""

    def set_status(self, status):
        raise NotImplementedError


class LoggingStatusReporter(StatusReporter):
    """Logs status changes; repeated reports go to DEBUG."""

    def __init__(self, name="indexer"):
        self.name = name
        self.status = None
        self.reports = 0

    def set_status(self, status):
        self.reports += 1
        if status != self.status:
            logger.info(f"[{self.name}] status: {status}")
        else:
            logger.debug(f"[{self.name}] status: {status} (report {self.reports})")
        self.status = status


class DynamoDBStatusReporter(StatusReporter):
    """Writes each status report to a DynamoDB table keyed by indexer id and timestamp."""

    def __init__(self, table_name, indexer_id, dynamodb=None, region_name=AWS_REGION):
        self.indexer_id = indexer_id
        self.dynamodb = dynamodb or boto3.resource('dynamodb', region_name=region_name)
        self.table = self.dynamodb.Table(table_name)

    def set_status(self, status):
        timestamp = datetime.now(timezone.utc).isoformat()
        self.table.put_item(
            Item={
                'indexer_id': self.indexer_id,
                'timestamp': timestamp,
                'status': status,
            }
        )
        logger.debug(f"Status {status!r} sent for {self.indexer_id} at {timestamp}")
