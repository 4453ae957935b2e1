"""流式聊天的最小演示：打印一次对话的逐字回复。"""

from chat_core.api.service import stream_chat

if __name__ == "__main__":
    question = "请用三句话介绍一下流式输出的好处"
    current_id, printed = None, 0
    print("User:", question)
    print("Assistant: ", end="", flush=True)
    for snapshot in stream_chat(question):
        reply = snapshot.messages[-1]
        if reply.is_user:
            continue
        if reply.id != current_id:
            current_id, printed = reply.id, 0
        print(reply.text[printed:], end="", flush=True)
        printed = len(reply.text)
    print()
