"""
Cogs package for Aegis.
Each module defines a cog class and a setup function to register it with the bot.
The cogs are loaded explicitly in main.py, after the moderation state has been
rehydrated, so no command can observe an unloaded scheduler.
"""
