"""Scripted ACP agent used by the protocol client tests.

Run with `sys.executable fake_agent.py`. The behaviour of session/prompt is
picked by the FAKE_AGENT_SCENARIO environment variable. Every message the
agent receives is appended to FAKE_AGENT_LOG when that is set.
"""

import json
import os
import sys


SCENARIO = os.environ.get("FAKE_AGENT_SCENARIO", "echo")
LOG_PATH = os.environ.get("FAKE_AGENT_LOG")
REPLY_TEXT = os.environ.get("FAKE_AGENT_TEXT", "Hello world")

_next_id = 100


def send(message):
    sys.stdout.write(json.dumps(message) + "\n")
    sys.stdout.flush()


def read():
    line = sys.stdin.readline()
    if not line:
        sys.exit(0)
    message = json.loads(line)
    if LOG_PATH:
        with open(LOG_PATH, "a", encoding="utf-8") as f:
            f.write(json.dumps(message) + "\n")
    return message


def chunk(session_id, text):
    send({
        "jsonrpc": "2.0",
        "method": "session/update",
        "params": {
            "sessionId": session_id,
            "update": {"sessionUpdate": "agent_message_chunk", "content": {"type": "text", "text": text}},
        },
    })


def call(method, params):
    """Send a request to the client and wait for its response."""
    global _next_id
    _next_id += 1
    request_id = _next_id
    send({"jsonrpc": "2.0", "id": request_id, "method": method, "params": params})
    while True:
        message = read()
        if message.get("id") == request_id and "method" not in message:
            return message


def reply(request_id, result):
    send({"jsonrpc": "2.0", "id": request_id, "result": result})


def handle_prompt(request_id, session_id):
    if SCENARIO == "echo":
        words = REPLY_TEXT.split(" ")
        for i, word in enumerate(words):
            chunk(session_id, word if i == len(words) - 1 else word + " ")
        send({
            "jsonrpc": "2.0",
            "method": "session/update",
            "params": {
                "sessionId": session_id,
                "update": {"sessionUpdate": "tool_call", "toolCallId": "call-1", "title": "Read file", "kind": "read"},
            },
        })
        reply(request_id, {"stopReason": "end_turn"})

    elif SCENARIO == "permission":
        response = call("session/request_permission", {
            "sessionId": session_id,
            "toolCall": {"toolCallId": "call-1", "title": "Run tests"},
            "options": [
                {"optionId": "reject", "name": "Reject", "kind": "reject_once"},
                {"optionId": "allow", "name": "Allow", "kind": "allow_once"},
            ],
        })
        if "error" in response:
            chunk(session_id, f"error:{response['error']['code']}")
        else:
            outcome = response["result"]["outcome"]
            chunk(session_id, outcome.get("optionId") or outcome["outcome"])
        reply(request_id, {"stopReason": "end_turn"})

    elif SCENARIO == "fs":
        call("fs/write_text_file", {"sessionId": session_id, "path": "notes/out.txt", "content": "written"})
        response = call("fs/read_text_file", {"sessionId": session_id, "path": "input.txt", "line": 2, "limit": 1})
        chunk(session_id, response["result"]["content"])
        response = call("fs/read_text_file", {"sessionId": session_id, "path": "missing.txt"})
        chunk(session_id, f"error:{response['error']['code']}")
        reply(request_id, {"stopReason": "end_turn"})

    elif SCENARIO == "terminal":
        created = call("terminal/create", {
            "sessionId": session_id,
            "command": "echo",
            "args": ["from terminal"],
        })
        terminal_id = created["result"]["terminalId"]
        exited = call("terminal/wait_for_exit", {"sessionId": session_id, "terminalId": terminal_id})
        output = call("terminal/output", {"sessionId": session_id, "terminalId": terminal_id})
        call("terminal/release", {"sessionId": session_id, "terminalId": terminal_id})
        missing = call("terminal/output", {"sessionId": session_id, "terminalId": terminal_id})
        chunk(session_id, json.dumps({
            "exit": exited["result"],
            "output": output["result"]["output"],
            "missing": missing["error"]["code"],
        }))
        reply(request_id, {"stopReason": "end_turn"})

    elif SCENARIO == "unknown":
        call("unsupported/method", {"sessionId": session_id})
        # The client gives up on the turn; stay alive until stdin closes
        while True:
            read()

    elif SCENARIO == "exit":
        sys.exit(3)

    elif SCENARIO == "cancel":
        chunk(session_id, "working")
        while True:
            message = read()
            if message.get("method") == "session/cancel":
                break
        reply(request_id, {"stopReason": "cancelled"})

    else:
        send({"jsonrpc": "2.0", "id": request_id, "error": {"code": -32603, "message": f"unknown scenario {SCENARIO}"}})


def main():
    if SCENARIO == "garbage":
        sys.stdout.write("this is not json\n")
        sys.stdout.flush()

    sessions = 0
    while True:
        message = read()
        method = message.get("method")
        request_id = message.get("id")

        if method == "initialize":
            if SCENARIO == "bad_init":
                reply(request_id, {"unexpected": True})
            else:
                reply(request_id, {"protocolVersion": 1, "agentCapabilities": {"loadSession": False}})
        elif method == "session/new":
            sessions += 1
            reply(request_id, {"sessionId": f"sess-{sessions}"})
        elif method == "session/prompt":
            handle_prompt(request_id, message["params"]["sessionId"])
        elif method == "session/cancel":
            continue
        elif request_id is not None:
            send({"jsonrpc": "2.0", "id": request_id, "error": {"code": -32601, "message": "Method not found"}})


if __name__ == "__main__":
    main()
