import json
import os
from typing import Iterator, List, Optional

import gradio as gr
import httpx

API_URL = os.getenv("CHAT_API_URL", "http://127.0.0.1:8000/api/chat")


def normalize_content(content) -> str:
    """
    This function is used to normalize the UIs messages into pure strings

    :param content: UIs message
    :return: normalized string
    :rtype: str
    """
    # If already a string, return it
    if isinstance(content, str):
        return content
    # If Gradio gives list of blocks like [{"type":"text","text":"..."}]
    if isinstance(content, list):
        parts = []
        for item in content:
            if isinstance(item, dict) and "text" in item:
                parts.append(item["text"])
            elif isinstance(item, str):
                parts.append(item)
        return "".join(parts)
    # Fallback
    return str(content)


def parse_event(line: str) -> str:
    """
    Extract the text of one ``{"response": ...}`` line of the chat stream.

    :param line: one line of the response body
    :type line: str
    :return: chunk text, empty for blank or unknown lines
    :rtype: str
    """
    line = line.strip()
    if not line:
        return ""
    data = json.loads(line)
    if isinstance(data, dict) and isinstance(data.get("response"), str):
        return data["response"]
    return ""


def stream_reply(messages: List[dict], api_url: str = API_URL, client: Optional[httpx.Client] = None) -> Iterator[str]:
    """
    POST the conversation to the chat API and yield text chunks as they arrive.
    An error answer is yielded once as readable text.
    """
    owns_client = client is None
    client = client or httpx.Client(timeout=httpx.Timeout(30.0, read=None))
    try:
        with client.stream("POST", api_url, json={"messages": messages}) as r:
            if r.status_code != 200:
                r.read()
                try:
                    err = r.json()
                    yield f"Error: {err.get('error')} ({err.get('details')})"
                except ValueError:
                    yield f"Error: {r.status_code} {r.text}"
                return
            for line in r.iter_lines():
                text = parse_event(line)
                if text:
                    yield text
    finally:
        if owns_client:
            client.close()


def respond(message, history):
    """
    message: str
    history: list[dict]  (gr.Chatbot messages format)
    """
    # Convert Gradio history to the API conversation format
    conversation = [{"role": m["role"], "content": normalize_content(m["content"])} for m in history or []]
    conversation.append({"role": "user", "content": message})

    # Start by echoing the user message in the UI immediately good for UX
    ui_history = (history or []) + [{"role": "user", "content": message}, {"role": "assistant", "content": ""}]
    yield ui_history, ""

    for delta in stream_reply(conversation):
        ui_history[-1]["content"] += delta
        yield ui_history, ""


def build_ui():
    with gr.Blocks(title="Chat") as demo: #creates a gradio UI page
        gr.Markdown("# LLM Chat")
        chatbot = gr.Chatbot(height=450) ##chat component
        msg = gr.Textbox(placeholder="Type a message...", label="Message")
        send = gr.Button("Send")

        send.click(respond, inputs=[msg, chatbot], outputs=[chatbot, msg])
        msg.submit(respond, inputs=[msg, chatbot], outputs=[chatbot, msg])
    return demo


if __name__ == "__main__":
    build_ui().launch(server_name="0.0.0.0", server_port=7860)
