"""Tests for the DynamoDB backend against a mocked boto3 resource."""

from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from eva_toolkit.conversation_database.data_models.annotation import PartMetadataUpdate
from eva_toolkit.conversation_database.data_models.conversation import Conversation
from eva_toolkit.conversation_database.data_models.message import Message, MessageKey, TextPart
from eva_toolkit.conversation_database.dynamodb import (
    CONDITION_NOT_EXISTS,
    DynamoDBChatDatabase,
    from_dynamo,
    to_dynamo,
)
from eva_toolkit.conversation_database.exceptions import (
    ConversationAlreadyExistsError,
    ConversationOwnershipError,
    MessageNotFoundError,
)
from eva_toolkit.llms.base import Roles

from fakes import message_id


def condition_failed(operation: str) -> ClientError:
    return ClientError({"Error": {"Code": "ConditionalCheckFailedException", "Message": "exists"}}, operation)


@pytest.fixture
def resource():
    return MagicMock()


@pytest.fixture
def table(resource):
    return resource.Table.return_value


@pytest.fixture
def dynamo_db(resource):
    return DynamoDBChatDatabase(table_name="Chat", resource=resource, max_unprocessed_retries=1)


def make_message(second: int = 1) -> Message:
    return Message(id=message_id(second), conversation_id="conv-1", role=Roles.USER, parts=[TextPart(text="Hello")])


def test_number_conversion():
    assert to_dynamo({"a": [0.5, 1, "x"]}) == {"a": [Decimal("0.5"), 1, "x"]}
    assert from_dynamo({"a": [Decimal("0.5"), Decimal("3")]}) == {"a": [0.5, 3]}


@pytest.mark.asyncio
async def test_create_message_uses_conditional_put(dynamo_db, table):
    stored = await dynamo_db.create_message(make_message())

    kwargs = table.put_item.call_args.kwargs
    assert kwargs["ConditionExpression"] == CONDITION_NOT_EXISTS
    assert kwargs["Item"]["PK"] == "CONVERSATION#conv-1"
    assert kwargs["Item"]["SK"] == message_id(1)
    assert kwargs["Item"]["annotation"]["parts"] == {}
    assert stored.annotation is not None


@pytest.mark.asyncio
async def test_duplicate_message_returns_stored_item(dynamo_db, table):
    table.put_item.side_effect = condition_failed("PutItem")
    existing = make_message().model_copy(update={"parts": [TextPart(text="original")]})
    table.get_item.return_value = {
        "Item": {"PK": "CONVERSATION#conv-1", "SK": message_id(1), **existing.model_dump(mode="json")}
    }

    stored = await dynamo_db.create_message(make_message())

    assert stored.text == "original"


@pytest.mark.asyncio
async def test_other_put_errors_propagate(dynamo_db, table):
    table.put_item.side_effect = ClientError({"Error": {"Code": "ProvisionedThroughputExceededException"}}, "PutItem")

    with pytest.raises(ClientError):
        await dynamo_db.create_message(make_message())


@pytest.mark.asyncio
async def test_create_conversation_conflict(dynamo_db, table):
    table.put_item.side_effect = condition_failed("PutItem")
    table.get_item.return_value = {"Item": {"PK": "CONVERSATION#conv-1", "SK": "OWNER", "user_id": "user-1"}}

    with pytest.raises(ConversationAlreadyExistsError):
        await dynamo_db.create_conversation(Conversation(id="conv-1", user_id="user-1"))


@pytest.mark.asyncio
async def test_create_conversation_claims_the_id_first(dynamo_db, table):
    await dynamo_db.create_conversation(Conversation(id="conv-1", user_id="user-1"))

    claim, record = table.put_item.call_args_list
    assert claim.kwargs["Item"] == {"PK": "CONVERSATION#conv-1", "SK": "OWNER", "user_id": "user-1"}
    assert claim.kwargs["ConditionExpression"] == CONDITION_NOT_EXISTS
    assert record.kwargs["Item"]["PK"] == "USER#user-1"


@pytest.mark.asyncio
async def test_conversation_id_of_another_user_is_refused(dynamo_db, table):
    table.put_item.side_effect = [condition_failed("PutItem")]
    table.get_item.return_value = {"Item": {"PK": "CONVERSATION#conv-1", "SK": "OWNER", "user_id": "user-2"}}

    with pytest.raises(ConversationOwnershipError):
        await dynamo_db.create_conversation(Conversation(id="conv-1", user_id="user-1"), exist_ok=True)

    assert table.put_item.call_count == 1

@pytest.mark.asyncio
async def test_update_message_part_sets_nested_fields(dynamo_db, table):
    await dynamo_db.update_message_part("conv-1", message_id(1), 3, PartMetadataUpdate(threshold=0.5))

    create_part, set_fields = table.update_item.call_args_list
    assert "if_not_exists" in create_part.kwargs["UpdateExpression"]
    assert create_part.kwargs["ExpressionAttributeNames"]["#part"] == "part_3"
    assert set_fields.kwargs["UpdateExpression"] == "SET #annotation.#parts.#part.#f0 = :v0"
    assert set_fields.kwargs["ExpressionAttributeNames"]["#f0"] == "threshold"
    assert set_fields.kwargs["ExpressionAttributeValues"] == {":v0": Decimal("0.5")}
    assert set_fields.kwargs["Key"] == {"PK": "CONVERSATION#conv-1", "SK": message_id(1)}


@pytest.mark.asyncio
async def test_update_of_missing_message_raises_not_found(dynamo_db, table):
    table.update_item.side_effect = condition_failed("UpdateItem")

    with pytest.raises(MessageNotFoundError):
        await dynamo_db.update_message_part("conv-1", message_id(1), 0, PartMetadataUpdate(is_in_report=True))


@pytest.mark.asyncio
async def test_keys_only_query_paginates(dynamo_db, table):
    table.query.side_effect = [
        {"Items": [{"PK": "CONVERSATION#conv-1", "SK": message_id(1)}], "LastEvaluatedKey": {"PK": "x"}},
        {"Items": [{"PK": "CONVERSATION#conv-1", "SK": message_id(2)}]},
    ]

    keys = await dynamo_db.list_messages("conv-1", keys_only=True)

    assert [key.sk for key in keys] == [message_id(1), message_id(2)]
    first_call, second_call = table.query.call_args_list
    assert first_call.kwargs["ProjectionExpression"] == "PK, SK"
    assert first_call.kwargs["ScanIndexForward"] is True
    assert second_call.kwargs["ExclusiveStartKey"] == {"PK": "x"}


@pytest.mark.asyncio
async def test_delete_batch_retries_unprocessed_items(dynamo_db, resource):
    keys = [MessageKey(pk="CONVERSATION#conv-1", sk=message_id(i)) for i in range(3)]
    leftover = {"DeleteRequest": {"Key": {"PK": keys[2].pk, "SK": keys[2].sk}}}
    resource.batch_write_item.side_effect = [
        {"UnprocessedItems": {"Chat": [leftover]}},
        {"UnprocessedItems": {}},
    ]

    failed = await dynamo_db.delete_batch(keys)

    assert failed == []
    retry = resource.batch_write_item.call_args_list[1]
    assert retry.kwargs["RequestItems"] == {"Chat": [leftover]}


@pytest.mark.asyncio
async def test_delete_batch_reports_items_left_unprocessed(dynamo_db, resource):
    keys = [MessageKey(pk="CONVERSATION#conv-1", sk=message_id(1))]
    request = {"DeleteRequest": {"Key": {"PK": keys[0].pk, "SK": keys[0].sk}}}
    resource.batch_write_item.return_value = {"UnprocessedItems": {"Chat": [request]}}

    failed = await dynamo_db.delete_batch(keys)

    assert failed == keys
    assert resource.batch_write_item.call_count == 2
