import streamlit as st

from frontend.api_client import APIError


def render_usage_display():
    """Token and cost rollups for the active conversation and the whole account."""
    controller = st.session_state.controller
    api = controller.api
    st.markdown("**Usage**")

    try:
        conv_id = controller.store.active_conversation_id
        if conv_id:
            analytics = api.get_conversation_analytics(conv_id)
            st.metric("This conversation", f"${analytics['totalCost']:.4f}")
            st.caption(
                f"{analytics['totalTokens']:,} tokens · "
                f"{analytics['userMessages']} user / {analytics['assistantMessages']} assistant · "
                f"{analytics['averageTokensPerMessage']:.1f} tokens/msg"
            )

        stats = api.get_user_stats()
        st.metric("All conversations", f"${stats['totalCost']:.4f}")
        st.caption(
            f"{stats['totalConversations']} conversations · {stats['totalMessages']} messages · "
            f"{stats['starredConversations']} starred · {stats['archivedConversations']} archived"
        )

        top_tags = api.get_user_tags(limit=5)
        if top_tags:
            with st.expander("Top tags"):
                for entry in top_tags:
                    st.caption(f"{entry['tag']}: {entry['count']}")
    except APIError as exc:
        st.caption(f"Usage data unavailable ({exc.message})")


def render_prompt_panel():
    """Generate a reusable prompt from the active conversation."""
    controller = st.session_state.controller
    conv_id = controller.store.active_conversation_id
    if not conv_id:
        return
    st.markdown("**Prompts**")
    if st.button("Generate prompt", use_container_width=True):
        try:
            controller.generate_prompt(conv_id, model_id=st.session_state.get("model_id"))
        except APIError as exc:
            st.toast(exc.message)
    prompts = controller.store.prompts.get(conv_id)
    if prompts is None:
        try:
            prompts = controller.load_prompts(conv_id)
        except APIError as exc:
            st.caption(f"Prompts unavailable ({exc.message})")
            return
    for result in prompts[:5]:
        with st.expander(result["created_at"][:16].replace("T", " ")):
            st.code(result["generated_prompt"], language=None)
