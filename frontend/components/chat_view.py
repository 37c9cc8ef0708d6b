import streamlit as st

from frontend.api_client import APIError

SUGGESTED_PROMPTS = [
    "Help me write a prompt that summarizes meeting notes",
    "Turn this idea into a step-by-step system prompt",
    "Tell me about prompt engineering best practices for data analysis tasks",
    "Review my prompt for ambiguity",
]


def render_chat():
    """Render the active conversation and handle new input."""
    controller = st.session_state.controller
    store = controller.store
    conv = store.get_active_conversation()

    if store.ui_state.error:
        st.error(store.ui_state.error)
        store.set_error(None)

    if conv is None:
        st.markdown("### What would you like to explore?")
        cols = st.columns(2)
        for i, prompt_text in enumerate(SUGGESTED_PROMPTS):
            with cols[i % 2]:
                if st.button(prompt_text, key=f"suggest_{i}", use_container_width=True):
                    try:
                        conv = controller.create_conversation()
                        controller.open_conversation(conv.id)
                    except APIError as exc:
                        st.error(exc.message)
                        return
                    _handle_user_message(prompt_text)
                    st.rerun()
        return

    _render_header(conv)

    for msg in store.get_active_messages():
        with st.chat_message(msg.role):
            st.markdown(msg.content)
            parts = []
            if msg.status == "sending":
                parts.append("sending...")
            if msg.tokens_used:
                parts.append(f"{msg.tokens_used:,} tokens")
            if msg.cost:
                parts.append(f"${msg.cost:.6f}")
            if parts:
                st.caption(" · ".join(parts))
            if msg.status == "sent" and st.button(
                "★" if msg.is_starred else "☆", key=f"star_msg_{msg.id}"
            ):
                try:
                    controller.star_message(conv.id, msg.id)
                except APIError as exc:
                    st.toast(exc.message)
                st.rerun()

    if prompt := st.chat_input("Ask anything...", disabled=store.ui_state.is_sending):
        _handle_user_message(prompt)
        st.rerun()


def _render_header(conv):
    controller = st.session_state.controller
    col1, col2 = st.columns([4, 1])
    with col1:
        new_title = st.text_input("Title", value=conv.title, key=f"title_{conv.id}")
        if new_title != conv.title:
            try:
                controller.rename(conv.id, new_title)
            except APIError as exc:
                st.toast(exc.message)
    with col2:
        label = "Unarchive" if conv.is_archived else "Archive"
        if st.button(label, key=f"archive_{conv.id}", use_container_width=True):
            try:
                controller.toggle_archive(conv.id)
            except APIError as exc:
                st.toast(exc.message)
            st.rerun()

    tag_input = st.text_input(
        "Add tags (comma separated)", key=f"tags_{conv.id}",
        placeholder=", ".join(conv.tags) or "e.g. marketing, sql",
    )
    if tag_input:
        tags = [t.strip() for t in tag_input.split(",") if t.strip()]
        if tags:
            try:
                controller.add_tags(conv.id, tags)
            except APIError as exc:
                st.toast(exc.message)
    if conv.error:
        st.caption(f":red[{conv.error}]")


def _handle_user_message(prompt: str):
    controller = st.session_state.controller
    conv_id = controller.store.active_conversation_id
    with st.chat_message("user"):
        st.markdown(prompt)
    with st.chat_message("assistant"):
        placeholder = st.empty()
        placeholder.markdown("*Thinking...*")
        try:
            _, reply = controller.send_message(
                conv_id, prompt, model_id=st.session_state.get("model_id")
            )
        except APIError as exc:
            placeholder.empty()
            st.error(f"Error: {exc.message}")
            return
        placeholder.markdown(reply.content)
