import toml
from more_itertools import flatten
from pathlib import Path, PurePath
from twisted.python import log

class GenericDescriptor():
    def __set_name__(self, owner, name):
        self.public_name = name
        self.private_name = '_' + name

    def __get__(self, obj, objtype=None):
        value = getattr(obj, self.private_name)
        return value

    def __set__(self, obj, value):
        setattr(obj, self.private_name, value)

class ClaimBotConfig:
    __default_file__ = "ClaimBot.toml"
    __search_path__ = [
        Path.cwd(),
        Path(__file__).resolve().parent,
        PurePath(Path.home(), '.config'),
        Path("/opt/claimbot/config")
    ]
    server            = GenericDescriptor()
    port              = GenericDescriptor()
    ssl               = GenericDescriptor()
    channels          = GenericDescriptor()
    nick              = GenericDescriptor()
    username          = GenericDescriptor()
    realname          = GenericDescriptor()
    trigger           = GenericDescriptor()
    pwfile            = GenericDescriptor()
    logfile           = GenericDescriptor()
    allowed_users     = GenericDescriptor()
    admins            = GenericDescriptor()
    claim_command     = GenericDescriptor()
    claim_cwd         = GenericDescriptor()
    claim_timeout     = GenericDescriptor()
    lockdir           = GenericDescriptor()
    line_delay        = GenericDescriptor()

    def __init__(self):
        self.server            = "irc.libera.chat"
        self.port              = 6697
        self.ssl               = True
        self.nick              = "ClaimBot"
        self.username          = "claimbot"
        self.realname          = "free game claim bot"
        self.channels          = ["#claimbot-test"]
        self.trigger           = "$"
        self.pwfile            = "pw"
        self.logfile           = "claimbot.log"
        self.allowed_users     = []
        self.admins            = []
        self.claim_command     = "~/claim_games_bot/claim_games.sh"
        self.claim_cwd         = None
        self.claim_timeout     = 600
        self.lockdir           = "/tmp"
        self.line_delay        = 1.0

    def update(self, dict_obj):
        # every table shares one namespace: [irc] nick and [claim] lockdir
        # both end up as plain attributes
        for key, val in flatten(
            map(lambda x: iter(dict_obj[x].items()),
                iter(dict_obj.keys()))
            ):
                self.__dict__["_" + key] = val

    def from_file(self, file_path=None):
        try:
            self.update(toml.load(file_path))
        except Exception:
            log.err(None, f"parsing {file_path}: failed")
            raise

    def fetch_and_update(self):
        path_join = lambda p: Path(p, self.__default_file__).resolve()
        fexists = lambda f: Path(f).resolve().exists()
        parses = lambda p: toml.load(p)
        try:
            self.update(next(map(parses,
                filter(fexists, map(path_join, iter(self.__search_path__))))))
        except StopIteration:
            log.msg(f"could not find config file {self.__default_file__} in search path: {self.__search_path__}")
            raise FileNotFoundError(self.__default_file__)
        except Exception:
            log.err(None, f"parsing {self.__default_file__}: failed")
            raise

    def fetch(self, file_path=None):
        if file_path:
            self.from_file(file_path)
        else:
            self.fetch_and_update()
        return self
