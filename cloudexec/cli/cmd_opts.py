from cloudexec.exceptions import APIUsageException


class cmdOpts(object):

    def __init__(self, long, short, description, default, vals=None, range=None, flag=None, count=False, append_list=False):
        self.long = "--" + long.replace('_', '-')
        self.dest = long
        self.short = "-" + short
        self.vals = vals
        self.default = default
        self.flag = flag
        self.range = range
        self.description = description
        self.count = count
        self.append_list = append_list

    def validate(self, options):

        try:
            val = getattr(options, self.dest)
        except AttributeError:
            emsg = self.get_error_msg()
            raise APIUsageException(emsg)

        if val is None:
            return
        if self.flag is not None:
            return
        if self.range is not None:
            try:
                fval = float(val)
            except ValueError:
                raise APIUsageException(self.get_error_msg())
            if len(self.range) == 2:
                if (self.range[0] is not None and fval < float(self.range[0])) or (self.range[1] is not None and fval > float(self.range[1])):
                    raise APIUsageException(self.get_error_msg())
            return

        if self.vals is not None:
            if val in self.vals:
                return
            raise APIUsageException(self.get_error_msg())

    def get_error_msg(self):
        return "The value of %s is not valid.  %s" % (self.long, self.get_description())

    def get_description(self):
        if self.range is not None:
            low = self.range[0]
            high = self.range[1]
            if high is None:
                return self.description + " : at least %s" % (str(low))
            return self.description + " : between %s - %s" % (str(low), str(high))

        if self.vals is not None:
            return self.description + " : {" + " | ".join([str(v) for v in self.vals]) + "}"

        return self.description

    def add_opt(self, parser):
        if self.flag is not None:
            if self.default:
                a = "store_false"
            else:
                a = "store_true"
            parser.add_option(self.short, self.long, dest=self.dest, default=self.default,
                action=a,
                help=self.get_description())
            return

        if self.count:
            parser.add_option(self.short, self.long, dest=self.dest,
                default=self.default,
                action="count",
                help=self.get_description())
            return

        if self.append_list:
            parser.add_option(self.short, self.long, dest=self.dest,
                default=self.default,
                action="append",
                help=self.get_description())
            return

        parser.add_option(self.short, self.long, dest=self.dest,
            default=self.default, type="string",
            help=self.get_description())
