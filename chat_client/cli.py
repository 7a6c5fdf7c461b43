#!/usr/bin/env python3
"""
CLI Client for End-to-End Encrypted Chat

Provides a command-line interface for:
- User registration and login
- Opening conversations with other users
- Sending and receiving encrypted messages (polled from the relay)
"""

import asyncio
import getpass
import logging
import sys
from typing import Optional, Set

from prompt_toolkit import PromptSession
from prompt_toolkit.patch_stdout import patch_stdout

from e2ee.errors import CryptoError
from e2ee.keystore import KeyStore

from .client import ChatClient, DecryptedMessage
from .config import ClientSettings
from .relay import Conversation, RelayClient, RelayError

logger = logging.getLogger(__name__)

HELP_TEXT = """Commands:
  /chat <username> - Start chat with user
  /exit - Leave current chat
  /history - List conversations
  /refresh - Reload current chat
  /older - Show earlier messages of current chat
  /contacts - List contacts
  /add <username> - Add a contact
  /remove <username> - Remove a contact
  /search <query> - Find users by name
  /name <display name> - Change your display name
  /help - Show this help
  /quit - Quit application"""

OLDER_PAGE_SIZE = 20


class ChatCLI:
    """
    Interactive prompt around a ChatClient.
    """

    def __init__(self, client: ChatClient, poll_interval: float = 2.0):
        self.client = client
        self.poll_interval = poll_interval
        self.current_chat: Optional[Conversation] = None
        self.seen: Set[int] = set()
        self.running = False

    def _label(self, conversation: Conversation) -> str:
        others = conversation.other_participants(self.client.user_id)
        return ", ".join(p.username for p in others) or "(empty)"

    def _render(self, item: DecryptedMessage) -> str:
        sender = "You" if item.message.sender_id == self.client.user_id else self._label(self.current_chat)
        timestamp = item.message.created_at.strftime("%H:%M")
        return f"[{timestamp}] {sender}: {item.text}"

    async def show_new_messages(self, show_all: bool = False):
        """Print messages of the current chat not printed before"""
        if not self.current_chat:
            return
        for item in await self.client.fetch_messages(self.current_chat):
            if show_all or item.message.id not in self.seen:
                print(self._render(item))
            self.seen.add(item.message.id)

    async def show_older_messages(self):
        """Print one page of messages older than the oldest one printed"""
        if not self.current_chat or not self.seen:
            return
        older = await self.client.fetch_messages(self.current_chat, OLDER_PAGE_SIZE, before=min(self.seen))
        if not older:
            print("No earlier messages")
        for item in older:
            print(self._render(item))
            self.seen.add(item.message.id)

    async def show_conversations(self):
        """Print every conversation with its unread count and newest message"""
        conversations = await self.client.list_conversations()
        print("Conversations:")
        for convo in conversations:
            line = f"  - {self._label(convo)}"
            if convo.unread_count:
                line += f" ({convo.unread_count} unread)"
            latest = await self.client.preview(convo)
            if latest is not None:
                line += f": {latest.text}"
            print(line)

    async def start_chat(self, username: str):
        """
        Start or continue a chat with a user.
        """
        self.current_chat = await self.client.open_conversation(username)
        self.seen.clear()
        print("\n--- Message History ---")
        await self.show_new_messages(show_all=True)
        print("--- End History ---\n")
        print(f"Chatting with {username}. Type '/exit' to leave chat, '/help' for commands.")

    async def poll_messages(self):
        """Background task printing incoming messages"""
        while self.running:
            await asyncio.sleep(self.poll_interval)
            try:
                await self.show_new_messages()
            except (RelayError, CryptoError) as e:
                print(f"\n[Error refreshing messages: {e}]")

    async def handle_command(self, command: str):
        """Handle slash commands"""
        parts = command.split(maxsplit=1)
        cmd = parts[0].lower()

        if cmd == "/chat" and len(parts) == 2:
            await self.start_chat(parts[1].strip())
        elif cmd == "/exit":
            self.current_chat = None
            print("Exited chat")
        elif cmd == "/history":
            await self.show_conversations()
        elif cmd == "/refresh":
            await self.show_new_messages(show_all=True)
        elif cmd == "/older":
            await self.show_older_messages()
        elif cmd == "/contacts":
            contacts = await self.client.list_contacts()
            if not contacts:
                print("No contacts yet. Use /add <username>.")
            for contact in contacts:
                print(f"  - {contact.display_name} ({contact.username})")
        elif cmd == "/add" and len(parts) == 2:
            contact = await self.client.add_contact(parts[1].strip())
            print(f"Added {contact.username} to contacts")
        elif cmd == "/remove" and len(parts) == 2:
            if await self.client.remove_contact(parts[1].strip()):
                print(f"Removed {parts[1].strip()} from contacts")
            else:
                print(f"{parts[1].strip()} is not a contact")
        elif cmd == "/search" and len(parts) == 2:
            users = await self.client.search_users(parts[1].strip())
            if not users:
                print("No users found")
            for user in users:
                print(f"  - {user['displayName']} ({user['username']})")
        elif cmd == "/name" and len(parts) == 2:
            user = await self.client.update_profile(parts[1].strip())
            print(f"Display name set to {user['displayName']}")
        elif cmd == "/quit":
            self.running = False
        elif cmd == "/help":
            print(HELP_TEXT)
        else:
            print("Unknown command. Type /help for help.")

    async def run(self):
        """Run interactive chat session"""
        self.running = True
        poll_task = asyncio.create_task(self.poll_messages())
        session = PromptSession()

        print()
        print(HELP_TEXT)
        print()

        try:
            while self.running:
                prompt_text = f"[{self._label(self.current_chat)}] > " if self.current_chat else "> "
                try:
                    with patch_stdout():
                        user_input = await session.prompt_async(prompt_text)
                except (KeyboardInterrupt, EOFError):
                    break

                user_input = user_input.strip()
                if not user_input:
                    continue

                try:
                    if user_input.startswith("/"):
                        await self.handle_command(user_input)
                    elif self.current_chat:
                        message = await self.client.send_message(self.current_chat, user_input)
                        self.seen.add(message.id)
                    else:
                        print("No active chat. Use /chat <username> to start.")
                except (RelayError, CryptoError) as e:
                    print(f"Error: {e}")
        finally:
            self.running = False
            poll_task.cancel()


async def main():
    """Main entry point"""
    settings = ClientSettings()
    logging.basicConfig(level=settings.log_level, format="%(levelname)s %(name)s: %(message)s")

    relay = RelayClient(settings.server_url, timeout=settings.request_timeout)
    keystore = KeyStore(
        storage_dir=settings.storage_dir,
        namespace=settings.key_namespace,
        kdf_iterations=settings.kdf_iterations
    )
    client = ChatClient(relay, keystore)

    print("=" * 50)
    print("SecureChat - End-to-End Encrypted Chat Client")
    print("=" * 50)
    print()

    try:
        while True:
            print("1. Register")
            print("2. Login")
            print("3. Quit")
            choice = input("Choose an option: ").strip()

            try:
                if choice == "1":
                    username = input("Username: ").strip()
                    display_name = input("Display name: ").strip() or username
                    password = getpass.getpass("Password: ")
                    await client.register(username, display_name, password)
                    print(f"Registration successful! Welcome, {display_name}")
                    break
                elif choice == "2":
                    username = input("Username: ").strip()
                    password = getpass.getpass("Password: ")
                    await client.login(username, password)
                    print(f"Login successful! Welcome back, {username}")
                    break
                elif choice == "3":
                    return
                else:
                    print("Invalid choice")
            except (RelayError, CryptoError) as e:
                print(f"Failed: {e}")

        await ChatCLI(client, settings.poll_interval).run()
    finally:
        await client.close()
        keystore.close()

    print("\nGoodbye!")


def run():
    """Console entry point"""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nInterrupted")
        sys.exit(0)


if __name__ == "__main__":
    run()
