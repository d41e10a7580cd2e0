import asyncio
import json

import httpx

from llm_gateway import ChatRequest, Gateway, GatewaySettings, Message, ProviderDescriptor
from llm_gateway.stores import StaticCredentialStore


def fake_upstream(request: httpx.Request) -> httpx.Response:
    # "flaky" is always overloaded so the gateway falls back to "steady"
    if request.url.host == "flaky.invalid":
        return httpx.Response(503, text="overloaded")
    chunks = [
        {"choices": [{"delta": {"content": "Hello"}}]},
        {"choices": [{"delta": {"content": " world"}}]},
        {"choices": [], "usage": {"prompt_tokens": 4, "completion_tokens": 2}},
    ]
    body = "".join(f"data: {json.dumps(c)}\n\n" for c in chunks) + "data: [DONE]\n\n"
    return httpx.Response(200, content=body.encode(), headers={"content-type": "text/event-stream"})


async def main() -> None:
    settings = GatewaySettings(
        providers=[
            ProviderDescriptor(name="flaky", kind="openai", endpoint="https://flaky.invalid", models={"demo": "x"}),
            ProviderDescriptor(
                name="steady",
                kind="openai",
                endpoint="https://steady.invalid",
                models={"demo": "y"},
                supports_tools=False,
            ),
        ]
    )
    credentials = StaticCredentialStore({"flaky": "DUMMY", "steady": "DUMMY"})

    async with Gateway.from_settings(
        settings, credentials=credentials, transport=httpx.MockTransport(fake_upstream)
    ) as gateway:
        req = ChatRequest(
            user_id="demo",
            chat_id="demo-chat",
            model="demo",
            messages=[Message(role="user", content="hi")],
        )
        async for event in gateway.stream(req):
            print(event.model_dump(exclude_none=True))

        record = gateway.accountant.get(req.request_id)
        print("Billed to", record.provider, "cost", record.cost)


if __name__ == "__main__":
    asyncio.run(main())
